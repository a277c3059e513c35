"""
Fetch adapter for the fact-retrieval API (Perplexity, OpenAI-compatible).

One logical call wraps up to three physical attempts. Transport failures,
timeouts and a fixed set of HTTP statuses are retried with linear backoff;
anything else fails immediately. The textual completion is de-fenced,
JSON-parsed and schema-validated before it leaves this module.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass

from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from budget import validate_batch_size
from config import FundFactsConfig
from fact_schema import FactRecord, FundIdentity, validate_fact_records
from prompt_loader import PromptMessages, build_messages, normalize_fund_mappings

logger = logging.getLogger("fund_facts.fetch")

MODEL = "sonar-pro"
MAX_OUTPUT_TOKENS = 2048
REQUEST_TIMEOUT_SECONDS = 20.0
MAX_ATTEMPTS = 3
RETRY_BACKOFF_SECONDS = 0.5
RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})
PREVIEW_CHARS = 500

_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")


class FactFetchError(Exception):
    """The external call failed or returned unusable content."""


class FactParseError(FactFetchError):
    """The completion text was not valid JSON."""

    def __init__(self, message: str, preview: str = ""):
        super().__init__(message)
        self.preview = preview


@dataclass
class FetchResult:
    payload: list[FactRecord]
    body: object
    attempts: int


def strip_markdown_code_fence(content: str) -> str:
    """Remove a leading ```json / ``` fence and a trailing ``` fence."""
    if not content:
        return content
    cleaned = _FENCE_OPEN_RE.sub("", content.strip())
    cleaned = _FENCE_CLOSE_RE.sub("", cleaned)
    return cleaned.strip()


def parse_fact_content(content: str) -> tuple[object, list[FactRecord]]:
    """Parse completion text into (raw body, validated records)."""
    cleaned = strip_markdown_code_fence(content)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise FactParseError(f"Failed to parse fact JSON content: {e}", preview=content[:PREVIEW_CHARS]) from e
    return parsed, validate_fact_records(parsed)


def create_client(config: FundFactsConfig, http_client=None) -> AsyncOpenAI:
    if not config.perplexity_api_key:
        raise FactFetchError("PERPLEXITY_API_KEY is not set")
    return AsyncOpenAI(
        api_key=config.perplexity_api_key,
        base_url=config.perplexity_api_url,
        timeout=REQUEST_TIMEOUT_SECONDS,
        max_retries=0,
        http_client=http_client,
    )


def _completion_text(response) -> str:
    choices = getattr(response, "choices", None) or []
    message = getattr(choices[0], "message", None) if choices else None
    content = getattr(message, "content", None)
    if not isinstance(content, str):
        raise FactFetchError("Fact retrieval response missing textual content")
    return content


def _error_body(error: APIStatusError) -> str:
    if error.response is not None:
        return error.response.text
    return str(error.body or "")


async def _backoff(attempt: int):
    await asyncio.sleep(attempt * RETRY_BACKOFF_SECONDS)


async def request_fund_facts(messages: PromptMessages, *, config: FundFactsConfig,
                             client: AsyncOpenAI | None = None) -> FetchResult:
    """Send one rendered prompt, retrying transient failures."""
    owns_client = client is None
    client = client or create_client(config)
    try:
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = await asyncio.wait_for(
                    client.chat.completions.create(
                        model=MODEL,
                        temperature=0,
                        max_tokens=MAX_OUTPUT_TOKENS,
                        messages=[
                            {"role": "system", "content": messages.system},
                            {"role": "user", "content": messages.user},
                        ],
                    ),
                    timeout=REQUEST_TIMEOUT_SECONDS,
                )
            except APIStatusError as e:
                if e.status_code in RETRYABLE_STATUS and attempt < MAX_ATTEMPTS:
                    logger.warning("Fact retrieval returned %s (attempt %d/%d), retrying",
                                   e.status_code, attempt, MAX_ATTEMPTS)
                    await _backoff(attempt)
                    continue
                raise FactFetchError(
                    f"Fact retrieval request failed ({e.status_code}): {_error_body(e)}"
                ) from e
            except (APIConnectionError, asyncio.TimeoutError) as e:
                if attempt == MAX_ATTEMPTS:
                    raise FactFetchError(
                        f"Fact retrieval transport error: {str(e) or type(e).__name__}"
                    ) from e
                logger.warning("Fact retrieval transport error (attempt %d/%d): %s",
                               attempt, MAX_ATTEMPTS, type(e).__name__)
                await _backoff(attempt)
                continue

            body, records = parse_fact_content(_completion_text(response))
            return FetchResult(payload=records, body=body, attempts=attempt)
    finally:
        if owns_client:
            await client.close()

    raise FactFetchError("Fact retrieval request failed")


async def fetch_fund_facts(funds: list[FundIdentity], *, config: FundFactsConfig,
                           client: AsyncOpenAI | None = None, goal_name: str | None = None,
                           goal_description: str | None = None) -> FetchResult:
    """Normalize ``funds``, render the prompt and fetch facts for all of them."""
    if not config.perplexity_api_key and client is None:
        raise FactFetchError("PERPLEXITY_API_KEY is not set")
    normalized = normalize_fund_mappings(funds)
    validate_batch_size(normalized, config.max_batch_size)
    messages = build_messages(normalized, goal_name=goal_name, goal_description=goal_description)
    return await request_fund_facts(messages, config=config, client=client)
