"""
Structured request logging with secret redaction.

One JSON line is emitted per lookup request. Prompts are represented only
by a short SHA-256 prefix, and any key or value that looks like a
credential is replaced before it reaches the log handler.
"""

import hashlib
import json
import logging
import re
import time
import uuid
from dataclasses import asdict, dataclass

logger = logging.getLogger("fund_facts.requests")

REDACTED = "***REDACTED***"

_SENSITIVE_KEY_PARTS = ("key", "token", "secret", "password", "authorization")

_API_KEY_ASSIGNMENT_RE = re.compile(
    r"""(["']?(?:api[_-]?key|api[_-]?token|authorization)["']?\s*[:=]\s*["']?)([^"'\s]{10,})(["']?)""",
    re.IGNORECASE,
)
_VENDOR_KEY_RE = re.compile(r"\b(sk-|pplx-)[A-Za-z0-9_\-]{20,}")
_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)


def generate_request_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def hash_prompt(prompt: str) -> str:
    """Short one-way fingerprint of a prompt for correlating requests."""
    if not prompt:
        return ""
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]


def redact_api_key(text: str) -> str:
    if not text:
        return text
    text = _API_KEY_ASSIGNMENT_RE.sub(lambda m: f"{m.group(1)}{REDACTED}{m.group(3)}", text)
    text = _VENDOR_KEY_RE.sub(lambda m: f"{m.group(1)}{REDACTED}", text)
    return _BEARER_RE.sub(lambda m: f"{m.group(1)}{REDACTED}", text)


def redact_sensitive_data(obj):
    """Recursively redact sensitive keys and credential-looking strings."""
    if isinstance(obj, str):
        return redact_api_key(obj)
    if isinstance(obj, (list, tuple)):
        return [redact_sensitive_data(item) for item in obj]
    if isinstance(obj, dict):
        redacted = {}
        for key, value in obj.items():
            if any(part in str(key).lower() for part in _SENSITIVE_KEY_PARTS):
                redacted[key] = REDACTED
            else:
                redacted[key] = redact_sensitive_data(value)
        return redacted
    return obj


@dataclass
class FundFactsLogEntry:
    request_id: str
    fund_id: str = ""
    cache_status: str = "error"  # hit | miss | disabled | error
    adapter_status: str = "skipped"  # success | error | skipped | low_confidence | empty_response
    confidence: str | None = None
    latency_ms: int = 0
    prompt_hash: str | None = None
    error_message: str | None = None


def log_fund_facts_request(entry: FundFactsLogEntry) -> dict:
    """Emit the per-request line and return what was logged."""
    payload = {k: v for k, v in asdict(entry).items() if v is not None}
    sanitized = redact_sensitive_data(payload)
    logger.info("[fund-facts] %s", json.dumps(sanitized))
    return sanitized
