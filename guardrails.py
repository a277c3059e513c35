"""
Fund Facts Guardrails: trust checks and non-advisory sanitization for
LLM-sourced fact records.

Behaviour that is likely to change (recommendation patterns, rejection
reasons) lives in guardrails.yaml:

    from guardrails import (
        load_guardrails,
        validate_guardrails,
        sanitize_fact_record,
        contains_recommendation_language,
        strip_recommendation_language,
    )
"""

import re
from dataclasses import dataclass
from pathlib import Path

import yaml

from fact_schema import FactRecord

# ---------------------------------------------------------------------------
# Config Loading
# ---------------------------------------------------------------------------

_CONFIG_PATH = Path(__file__).parent / "guardrails.yaml"
_config: dict | None = None
_patterns: list[re.Pattern] | None = None


def load_guardrails(path: str | Path | None = None) -> dict:
    """Load and cache the guardrail config from YAML."""
    global _config, _patterns
    if _config is not None and path is None:
        return _config
    p = Path(path) if path else _CONFIG_PATH
    with open(p, "r") as f:
        _config = yaml.safe_load(f)
    _patterns = [re.compile(rx, re.IGNORECASE) for rx in _config.get("recommendation_patterns", [])]
    return _config


def _cfg() -> dict:
    """Get the cached config (auto-loads if needed)."""
    if _config is None:
        load_guardrails()
    return _config


def _reason(name: str, default: str) -> str:
    return _cfg().get("reasons", {}).get(name, default)


# ---------------------------------------------------------------------------
# 1. Record Checks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GuardrailResult:
    passed: bool
    reason: str | None = None


def _present(value: str | None) -> bool:
    return bool(value and value.strip())


def validate_guardrails(record: FactRecord) -> GuardrailResult:
    """Run the three ordered checks; the first failure wins.

    An ISIN on its own does not satisfy the identity check.
    """
    if record.confidence == "low":
        return GuardrailResult(False, _reason("low_confidence", "confidence is low"))

    ident = record.fund_ident
    has_scheme_name = _present(ident.scheme_name_official) or _present(ident.query_name)
    has_amfi_code = _present(ident.amfi_code)
    if not has_scheme_name and not has_amfi_code:
        return GuardrailResult(False, _reason("missing_identity", "both scheme_name and amfi_code are missing"))

    if not record.sources:
        return GuardrailResult(False, _reason("missing_sources", "sources is empty"))

    return GuardrailResult(True)


# ---------------------------------------------------------------------------
# 2. Sanitization
# ---------------------------------------------------------------------------

def contains_recommendation_language(text: str | None) -> bool:
    """Best-effort match against the configured recommendation patterns."""
    if not text:
        return False
    _cfg()
    return any(p.search(text) for p in _patterns)


def strip_recommendation_language(text: str | None) -> str | None:
    """Return None when any pattern matches, otherwise the text unchanged."""
    if not text:
        return text
    if contains_recommendation_language(text):
        return None
    return text


def sanitize_fact_record(record: FactRecord) -> FactRecord:
    """Return a copy of ``record`` with advisory notes removed.

    Structured fields pass through untouched.
    """
    if not record.notes:
        return record
    notes = strip_recommendation_language(record.notes)
    if notes == record.notes:
        return record
    return record.model_copy(update={"notes": notes})
