"""
Daily call budget for the fact-retrieval API.

One counter row per UTC calendar day caps external spend. This is a soft
cost guard: the increment is read-then-upsert, so concurrent bursts can
under-count slightly. Budget reads fail open and budget writes never raise.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from datastore import DAILY_BUDGET_TABLE, DataStore

logger = logging.getLogger("fund_facts.budget")


@dataclass(frozen=True)
class BudgetCheck:
    allowed: bool
    calls_today: int
    limit: int
    reason: str | None = None


class BatchSizeError(ValueError):
    """Raised when a batch request exceeds the configured maximum."""


def _utc_now(now: datetime | None = None) -> datetime:
    return now or datetime.now(timezone.utc)


def today_utc(now: datetime | None = None) -> str:
    """Budget key for the current UTC calendar day (YYYY-MM-DD)."""
    return _utc_now(now).astimezone(timezone.utc).date().isoformat()


async def _calls_on(store: DataStore, day: str) -> int:
    row = await store.select_one(DAILY_BUDGET_TABLE, eq={"date": day})
    return int(row["call_count"]) if row else 0


async def check_daily_budget(store: DataStore, limit: int, now: datetime | None = None) -> BudgetCheck:
    """Check whether another external call is allowed today.

    Fails open: if the counter cannot be read, the call is allowed.
    """
    try:
        calls_today = await _calls_on(store, today_utc(now))
    except Exception as e:
        logger.error("Error checking daily budget, allowing request: %s", e)
        return BudgetCheck(allowed=True, calls_today=0, limit=limit)

    if calls_today >= limit:
        return BudgetCheck(
            allowed=False,
            calls_today=calls_today,
            limit=limit,
            reason=f"Daily budget exceeded: {calls_today}/{limit} calls used today",
        )
    return BudgetCheck(allowed=True, calls_today=calls_today, limit=limit)


async def record_llm_call(store: DataStore, now: datetime | None = None) -> None:
    """Increment today's counter. Failures are logged, never raised."""
    now = _utc_now(now)
    day = today_utc(now)
    try:
        current = await _calls_on(store, day)
        await store.upsert(
            DAILY_BUDGET_TABLE,
            {"date": day, "call_count": current + 1, "updated_at": now},
            on_conflict="date",
        )
    except Exception as e:
        logger.error("Failed to record fact-retrieval call: %s", e)


def seconds_until_utc_midnight(now: datetime | None = None) -> int:
    now = _utc_now(now).astimezone(timezone.utc)
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return math.ceil((tomorrow - now).total_seconds())


def create_rate_limit_error(check: BudgetCheck, now: datetime | None = None) -> dict:
    """Structured retry guidance for a budget-exhausted response."""
    return {
        "type": "budget_exceeded",
        "retry_after": seconds_until_utc_midnight(now),
        "calls_today": check.calls_today,
        "limit": check.limit,
    }


def validate_batch_size(fund_ids: list, max_batch_size: int) -> None:
    if len(fund_ids) > max_batch_size:
        raise BatchSizeError(
            f"Batch size {len(fund_ids)} exceeds maximum {max_batch_size}. Please paginate your request."
        )
