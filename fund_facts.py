"""
Fund Facts Orchestrator

Looks up a fund's deterministic facts and, when enabled, augments them with
cited facts from the LLM fact-retrieval API. Every path ends in a usable
response built from deterministic data; only malformed input, an unknown
fund and an exhausted daily budget produce a non-success outcome.

    identity -> feature flag -> cache -> budget -> prompt -> fetch
             -> confidence gate -> guardrails -> sanitize -> record call
             -> cache write -> merge
"""

import argparse
import asyncio
import json
import logging
import re
import sys
import time
from dataclasses import asdict, dataclass
from datetime import datetime

from budget import check_daily_budget, create_rate_limit_error, record_llm_call
from cache import PROVENANCE_LLM, meets_min_confidence, read_fresh_fund_facts, upsert_fund_facts
from config import FundFactsConfig, get_config
from datastore import NAV_TABLE, DataStore, DataStoreError, create_store
from fact_fetch import request_fund_facts
from fact_schema import FundIdentity
from guardrails import sanitize_fact_record, validate_guardrails
from prompt_loader import build_messages
from request_logging import FundFactsLogEntry, generate_request_id, hash_prompt, log_fund_facts_request

logger = logging.getLogger("fund_facts.orchestrator")

FUND_ID_RE = re.compile(r"[0-9]+")

PROVENANCE_DETERMINISTIC = "deterministic"
MAX_SOURCES = 3

# Terminal states
MERGED = "merged"
DETERMINISTIC = "deterministic"
RATE_LIMITED = "rate_limited"
INVALID_INPUT = "invalid_input"
NOT_FOUND = "not_found"

PERFORMANCE_FIELDS = ("cagr_1y", "cagr_3y", "cagr_5y", "ret_ytd", "ret_1m", "ret_3m", "ret_6m")
FEES_AUM_FIELDS = ("expense_ratio_pct", "aum_cr")


@dataclass
class FundFactsOutcome:
    state: str
    request_id: str
    data: dict | None = None
    summary: str | None = None
    source: str | None = None  # "cache" | "live" when merged
    reason: str | None = None
    detail: str | None = None
    rate_limit: dict | None = None
    error: str | None = None

    @property
    def provenance(self) -> str | None:
        return self.data.get("provenance") if self.data else None


# ---------------------------------------------------------------------------
# Deterministic data
# ---------------------------------------------------------------------------

async def lookup_fund_identity(store: DataStore, fund_id: str) -> FundIdentity | None:
    """Resolve a fund's identity from the NAV table, or None if unknown."""
    row = await store.select_one(NAV_TABLE, eq={"scheme_code": fund_id})
    if row is None:
        return None
    nav = row.get("nav_value")
    return FundIdentity(
        display_name=row.get("scheme_name") or None,
        registry_code=fund_id,
        isin=row.get("isin_div_payout") or row.get("isin_div_reinvestment") or None,
        latest_nav=float(nav) if nav not in (None, "") else None,
    )


def _overlay(deterministic: dict, llm: dict) -> dict:
    """Deterministic values win; LLM values only fill gaps."""
    merged = dict(llm)
    for key, value in deterministic.items():
        if value is not None:
            merged[key] = value
    return merged


def merge_fund_facts(fund_id: str, scheme_name: str | None, llm_data: dict | None,
                     deterministic: dict | None = None) -> dict:
    """Merge deterministic metrics with an (optional) validated LLM record."""
    deterministic = deterministic or {}
    det_risk_return = dict(deterministic.get("risk_return") or {})
    det_fees_aum = dict(deterministic.get("fees_aum") or {})

    if llm_data is None:
        return {
            "fund_id": fund_id,
            "scheme_name": scheme_name,
            "risk_return": det_risk_return,
            "fees_aum": det_fees_aum,
            "provenance": PROVENANCE_DETERMINISTIC,
            "llm_confidence": None,
            "llm_as_of": None,
            "sources": None,
            "notes": {"llm": "LLM data unavailable; showing deterministic metrics only."},
        }

    ident = llm_data["fund_ident"]
    perf = llm_data["performance"]
    risk = llm_data["risk_metrics"]
    facts = llm_data["facts"]

    llm_risk_return = {field: perf.get(field) for field in PERFORMANCE_FIELDS}
    llm_risk_return["vol_3y_ann"] = risk.get("stddev_pct")
    llm_risk_return["max_dd_5y"] = None
    llm_fees_aum = {field: facts.get(field) for field in FEES_AUM_FIELDS}

    sources = (llm_data.get("sources") or [])[:MAX_SOURCES]
    notes = llm_data.get("notes")
    return {
        "fund_id": fund_id,
        "scheme_name": ident.get("scheme_name_official") or ident.get("query_name") or scheme_name,
        "risk_return": _overlay(det_risk_return, llm_risk_return),
        "fees_aum": _overlay(det_fees_aum, llm_fees_aum),
        "provenance": PROVENANCE_LLM,
        "llm_confidence": llm_data.get("confidence"),
        "llm_as_of": perf.get("as_of") or risk.get("as_of"),
        "sources": sources or None,
        "notes": {"llm": notes} if notes else None,
    }


def generate_fund_facts_summary(scheme_name: str | None, fund_id: str, provenance: str,
                                confidence: str | None = None, source: str | None = None) -> str:
    """Neutral one-line description of where the data came from."""
    label = scheme_name or fund_id
    if provenance == PROVENANCE_DETERMINISTIC:
        if source == "disabled":
            return (f"Fund facts for {label}. Data sourced from deterministic calculations only "
                    f"(LLM augmentation disabled).")
        return f"Fund facts for {label}. Data sourced from deterministic calculations only."

    confidence_text = f" (confidence: {confidence})" if confidence else ""
    if source == "cache":
        return f"Fund facts for {label}. Data provided by LLM fact retrieval with cited sources{confidence_text}, retrieved from cache."
    return f"Fund facts for {label}. Data provided by LLM fact retrieval with cited sources{confidence_text}."


# ---------------------------------------------------------------------------
# Outcome builders
# ---------------------------------------------------------------------------

def _deterministic(request_id: str, fund_id: str, identity: FundIdentity, deterministic: dict,
                   reason: str, note: str, detail: str | None = None) -> FundFactsOutcome:
    data = merge_fund_facts(fund_id, identity.display_name, None, deterministic)
    data["notes"] = {"llm": note}
    summary = generate_fund_facts_summary(
        identity.display_name, fund_id, PROVENANCE_DETERMINISTIC,
        source="disabled" if reason == "disabled" else None,
    )
    return FundFactsOutcome(state=DETERMINISTIC, request_id=request_id, data=data,
                            summary=summary, reason=reason, detail=detail)


def _merged(request_id: str, fund_id: str, identity: FundIdentity, deterministic: dict,
            llm_data: dict, source: str) -> FundFactsOutcome:
    data = merge_fund_facts(fund_id, identity.display_name, llm_data, deterministic)
    summary = generate_fund_facts_summary(
        identity.display_name, fund_id, PROVENANCE_LLM, llm_data.get("confidence"), source
    )
    return FundFactsOutcome(state=MERGED, request_id=request_id, data=data, summary=summary, source=source)


# ---------------------------------------------------------------------------
# Lookup pipeline
# ---------------------------------------------------------------------------

async def _augment(fund_id: str, identity: FundIdentity, deterministic: dict, *, store: DataStore,
                   config: FundFactsConfig, client, min_confidence: str, now: datetime | None,
                   log_entry: FundFactsLogEntry) -> FundFactsOutcome:
    rid = log_entry.request_id

    # Step 1: Feature flag
    if not config.use_llm:
        log_entry.cache_status = "disabled"
        log_entry.adapter_status = "skipped"
        return _deterministic(rid, fund_id, identity, deterministic, "disabled",
                              "LLM augmentation is disabled; showing deterministic data only.")

    # Step 2: Cache read (errors degrade to a miss)
    cache_failed = False
    try:
        cached = await read_fresh_fund_facts(store, fund_id, config.ttl_days, now=now)
    except Exception as e:
        logger.warning("Fund facts cache read failed for %s: %s", fund_id, e)
        cached, cache_failed = None, True

    if cached and meets_min_confidence(cached.confidence, min_confidence) and cached.first_record():
        log_entry.cache_status = "hit"
        log_entry.confidence = cached.confidence
        log_entry.adapter_status = "success"
        return _merged(rid, fund_id, identity, deterministic, cached.first_record(), "cache")
    log_entry.cache_status = "error" if cache_failed else "miss"

    # Step 3: Daily budget
    budget = await check_daily_budget(store, config.max_daily_calls, now=now)
    if not budget.allowed:
        log_entry.adapter_status = "error"
        log_entry.error_message = budget.reason
        return FundFactsOutcome(
            state=RATE_LIMITED,
            request_id=rid,
            rate_limit=create_rate_limit_error(budget, now),
            error=(f"Daily fact-retrieval budget exceeded: {budget.calls_today}/{budget.limit} "
                   f"calls used today. Please try again later."),
        )

    # Step 4: Render prompt + fetch
    try:
        messages = build_messages([identity])
        log_entry.prompt_hash = hash_prompt(f"{messages.system}\n\n{messages.user}")
        result = await request_fund_facts(messages, config=config, client=client)
    except Exception as e:
        message = str(e) or type(e).__name__
        log_entry.adapter_status = "error"
        log_entry.error_message = message
        return _deterministic(rid, fund_id, identity, deterministic, "adapter_error",
                              f"LLM fact retrieval failed: {message}. Falling back to deterministic data only.",
                              detail=message)

    if not result.payload:
        log_entry.adapter_status = "empty_response"
        return _deterministic(rid, fund_id, identity, deterministic, "empty_response",
                              "LLM fact retrieval returned no data for this fund.")

    record = result.payload[0]
    log_entry.confidence = record.confidence
    logger.debug("Validated fact record for %s (request_id=%s): confidence=%s, %d sources",
                 fund_id, rid, record.confidence, len(record.sources))

    # Step 5: Confidence gate
    if not meets_min_confidence(record.confidence, min_confidence):
        log_entry.adapter_status = "low_confidence"
        return _deterministic(
            rid, fund_id, identity, deterministic, "low_confidence",
            f"LLM data has confidence '{record.confidence}', below the minimum threshold "
            f"({min_confidence}). Data not included in response.",
        )

    # Step 6: Guardrails
    verdict = validate_guardrails(record)
    if not verdict.passed:
        log_entry.adapter_status = "error"
        log_entry.error_message = f"Guardrail validation failed: {verdict.reason}"
        return _deterministic(
            rid, fund_id, identity, deterministic, "guardrail_failed",
            f"LLM data rejected by guardrails: {verdict.reason}. Falling back to deterministic data only.",
            detail=verdict.reason,
        )

    # Step 7: Sanitize, record the call, cache
    record = sanitize_fact_record(record)
    await record_llm_call(store, now=now)
    try:
        await upsert_fund_facts(store, fund_id, [record], now=now)
    except Exception as e:
        logger.error("Failed to cache fund facts for %s: %s", fund_id, e)

    log_entry.adapter_status = "success"
    return _merged(rid, fund_id, identity, deterministic, record.model_dump(mode="json"), "live")


async def lookup_fund_facts(fund_id, *, store: DataStore, config: FundFactsConfig | None = None,
                            client=None, min_confidence: str | None = None,
                            deterministic_metrics=None, request_id: str | None = None,
                            now: datetime | None = None) -> FundFactsOutcome:
    """Main entry point. Never raises; always returns a FundFactsOutcome.

    Args:
        fund_id: AMFI scheme code (numeric string).
        store: Backend holding nav_data, the fact cache and the budget ledger.
        config: Defaults to the process-wide config.
        client: Optional pre-built AsyncOpenAI client for the fetch adapter.
        min_confidence: Overrides config.min_confidence for this call.
        deterministic_metrics: Optional async callable (FundIdentity) -> dict
            with "risk_return" / "fees_aum" blocks from internal calculations.
        request_id: Correlation id; generated when omitted.
        now: Clock override for TTL and budget-day computations.
    """
    config = config or get_config()
    min_confidence = min_confidence or config.min_confidence
    started = time.perf_counter()
    log_entry = FundFactsLogEntry(request_id=request_id or generate_request_id(), fund_id=str(fund_id or ""))
    rid = log_entry.request_id

    def _finish(outcome: FundFactsOutcome) -> FundFactsOutcome:
        log_entry.latency_ms = round((time.perf_counter() - started) * 1000)
        log_fund_facts_request(log_entry)
        return outcome

    # Step 0: Input validation
    if not isinstance(fund_id, str) or not FUND_ID_RE.fullmatch(fund_id):
        log_entry.adapter_status = "error"
        log_entry.error_message = "Invalid fundId format"
        return _finish(FundFactsOutcome(
            state=INVALID_INPUT, request_id=rid,
            error="Invalid fundId format. Expected AMFI scheme_code (numeric string).",
        ))

    identity = FundIdentity(registry_code=fund_id)
    deterministic: dict = {}
    try:
        # Step 0b: Identity lookup (store outage degrades to the bare code)
        try:
            found = await lookup_fund_identity(store, fund_id)
        except DataStoreError as e:
            logger.warning("Fund identity lookup failed for %s: %s", fund_id, e)
            found = identity
        if found is None:
            log_entry.adapter_status = "error"
            log_entry.error_message = "Fund not found"
            return _finish(FundFactsOutcome(state=NOT_FOUND, request_id=rid, error="Fund not found"))
        identity = found

        if deterministic_metrics is not None:
            deterministic = await deterministic_metrics(identity) or {}

        outcome = await _augment(fund_id, identity, deterministic, store=store, config=config,
                                 client=client, min_confidence=min_confidence, now=now,
                                 log_entry=log_entry)
        return _finish(outcome)
    except Exception as e:
        logger.exception("Unexpected error in fund facts lookup for %s", fund_id)
        log_entry.adapter_status = "error"
        log_entry.error_message = str(e) or type(e).__name__
        return _finish(_deterministic(
            rid, fund_id, identity, deterministic, "internal_error",
            "LLM augmentation unavailable due to an internal error. Showing deterministic data only.",
        ))


# --- CLI ---

def main(argv=None):
    parser = argparse.ArgumentParser(description="Look up fund facts for one AMFI scheme code.")
    parser.add_argument("fund_id", help="AMFI scheme code")
    parser.add_argument("--min-confidence", choices=["high", "medium"], default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = get_config()
    outcome = asyncio.run(lookup_fund_facts(
        args.fund_id, store=create_store(config), config=config, min_confidence=args.min_confidence,
    ))
    print(json.dumps(asdict(outcome), indent=2, default=str))
    return 0 if outcome.state in (MERGED, DETERMINISTIC) else 1


if __name__ == "__main__":
    sys.exit(main())
