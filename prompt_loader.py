"""
Prompt loader and template renderer for the fact-retrieval API.

Loads the system prompt and user-prompt templates from prompts/ and renders
them with fund data. Template syntax:

  {{name}}                        value, or "N/A" when missing or empty
  {{#if name}}...{{/if}}          kept only when name has a real value
  {{#each funds}}...{{/each}}     repeated per fund, with a 1-based {{index}}

The legacy loop form {{#funds}}...{{/funds}} is accepted too.
"""

import re
import threading
from dataclasses import dataclass
from pathlib import Path

from fact_schema import FundIdentity

PROMPTS_DIR = Path(__file__).parent / "prompts"
SYSTEM_PROMPT_FILE = "system-prompt.md"
USER_PROMPT_SINGLE_FILE = "user-prompt-single.md"
USER_PROMPT_BATCH_FILE = "user-prompt-batch.md"

MISSING_VALUE = "N/A"

_VAR_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")
# Innermost conditional first: the body may not open another {{#if}}
_IF_RE = re.compile(r"\{\{#if\s+(\w+)\s*\}\}((?:(?!\{\{#if\s).)*?)\{\{/if\}\}", re.DOTALL)
_EACH_RE = re.compile(r"\{\{#(?:each\s+)?funds\}\}(.*?)\{\{/(?:each|funds)\}\}", re.DOTALL)
_LOOP_SLOT_RE = re.compile(r"\x00(\d+)\x00")

_system_prompt: str | None = None
_system_prompt_lock = threading.Lock()


class PromptRenderError(ValueError):
    """Raised when a prompt cannot be built."""


@dataclass(frozen=True)
class PromptMessages:
    system: str
    user: str


# ---------------------------------------------------------------------------
# Template files
# ---------------------------------------------------------------------------

def _read_prompt_file(file_name: str) -> str:
    path = PROMPTS_DIR / file_name
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise PromptRenderError(f"Failed to load prompt from {path}: {e}") from e


def load_system_prompt() -> str:
    """Load the system prompt once per process."""
    global _system_prompt
    if _system_prompt is not None:
        return _system_prompt
    with _system_prompt_lock:
        if _system_prompt is None:
            _system_prompt = _read_prompt_file(SYSTEM_PROMPT_FILE)
    return _system_prompt


def load_user_prompt_template(is_batch: bool) -> str:
    return _read_prompt_file(USER_PROMPT_BATCH_FILE if is_batch else USER_PROMPT_SINGLE_FILE)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _resolve(variables: dict, name: str) -> str:
    value = variables.get(name)
    if value is None or value == "":
        return MISSING_VALUE
    return str(value)


def _has_value(variables: dict, name: str) -> bool:
    value = variables.get(name)
    if value is None:
        return False
    text = str(value).strip()
    return text != "" and text != MISSING_VALUE


def _render_scalars(text: str, variables: dict) -> str:
    previous = None
    while previous != text:
        previous = text
        text = _IF_RE.sub(
            lambda m: m.group(2) if _has_value(variables, m.group(1)) else "",
            text,
        )
    return _VAR_RE.sub(lambda m: _resolve(variables, m.group(1)), text)


def fund_variables(fund: FundIdentity) -> dict:
    """Template variables for one fund, including the legacy aliases."""
    return {
        "scheme_name": fund.display_name,
        "fund_name": fund.display_name,
        "name": fund.display_name,
        "fund_id": fund.registry_code,
        "amfi_code": fund.registry_code,
        "fund_amfi_code": fund.registry_code,
        "isin": fund.isin,
        "fund_isin": fund.isin,
        "latest_nav": fund.latest_nav,
        "current_value": fund.current_value,
    }


def render_template(template: str, variables: dict, funds: list[FundIdentity] | None = None) -> str:
    """Render ``template``; loop blocks see each fund's variables plus ``index``.

    Loop output is spliced in after the outer pass, so substituted values
    are never scanned for tags a second time.
    """
    expanded: list[str] = []

    def _expand_loop(match: re.Match) -> str:
        body = match.group(1)
        lines = []
        for index, fund in enumerate(funds or [], start=1):
            scope = {**variables, **fund_variables(fund), "index": index}
            lines.append(_render_scalars(body, scope))
        expanded.append("".join(lines))
        return f"\x00{len(expanded) - 1}\x00"

    rendered = _render_scalars(_EACH_RE.sub(_expand_loop, template), variables)
    return _LOOP_SLOT_RE.sub(lambda m: expanded[int(m.group(1))], rendered).strip()


def render_user_prompt_single(template: str, fund: FundIdentity, goal_name=None, goal_description=None) -> str:
    variables = {**fund_variables(fund), "goal_name": goal_name, "goal_description": goal_description}
    return render_template(template, variables)


def render_user_prompt_batch(template: str, funds: list[FundIdentity], goal_name=None, goal_description=None) -> str:
    variables = {"goal_name": goal_name, "goal_description": goal_description}
    return render_template(template, variables, funds)


def build_messages(funds: list[FundIdentity], goal_name: str | None = None,
                   goal_description: str | None = None) -> PromptMessages:
    """Build the system/user message pair for one fact-retrieval call."""
    if not funds:
        raise PromptRenderError("No funds provided for prompt generation")

    is_batch = len(funds) > 1
    template = load_user_prompt_template(is_batch)
    if is_batch:
        user = render_user_prompt_batch(template, funds, goal_name, goal_description)
    else:
        user = render_user_prompt_single(template, funds[0], goal_name, goal_description)
    return PromptMessages(system=load_system_prompt(), user=user)


# ---------------------------------------------------------------------------
# Fund list normalization
# ---------------------------------------------------------------------------

def _clean(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_fund_mappings(mappings: list[FundIdentity]) -> list[FundIdentity]:
    """Trim, drop unidentifiable entries, and de-duplicate.

    Entries are keyed by registry code, then ISIN, then display name
    (case-insensitive). Gaps in the first entry are filled from later
    duplicates.
    """
    deduped: dict[str, FundIdentity] = {}
    for mapping in mappings:
        fund = FundIdentity(
            display_name=_clean(mapping.display_name),
            registry_code=_clean(mapping.registry_code),
            isin=_clean(mapping.isin),
            official_name=_clean(mapping.official_name),
            latest_nav=mapping.latest_nav,
            current_value=mapping.current_value,
        )
        if not fund.is_identifiable():
            continue

        key = (fund.registry_code or fund.isin or fund.display_name).lower()
        existing = deduped.get(key)
        if existing is None:
            deduped[key] = fund
            continue

        for attr in ("display_name", "registry_code", "isin", "official_name", "latest_nav", "current_value"):
            if getattr(existing, attr) is None and getattr(fund, attr) is not None:
                setattr(existing, attr, getattr(fund, attr))

    return list(deduped.values())
