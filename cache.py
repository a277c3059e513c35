"""
Cache-aside layer for LLM-sourced fund facts.

One current entry per fund, overwritten on every write. An entry is usable
only while it is younger than the configured TTL and its confidence meets
the caller's floor (the floor is checked by the caller, since it varies
per request).

Read errors propagate so the caller can treat them as a miss; write errors
propagate so the caller can log them without failing the response.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from datastore import FUND_FACTS_TABLE, DataStore
from fact_schema import FactRecord

logger = logging.getLogger("fund_facts.cache")

PROVENANCE_LLM = "llm+cited"

_CONFIDENCE_RANK = {"low": 0, "medium": 1, "high": 2}


@dataclass
class CacheEntry:
    fund_id: str
    as_of_month: str
    payload: list[dict]
    confidence: str
    sources: list = field(default_factory=list)
    provenance: str = PROVENANCE_LLM
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict) -> "CacheEntry":
        created_at = row.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        as_of_month = row.get("as_of_month")
        if isinstance(as_of_month, date):
            as_of_month = as_of_month.isoformat()
        return cls(
            fund_id=row["fund_id"],
            as_of_month=as_of_month,
            payload=row.get("payload") or [],
            confidence=row["confidence"],
            sources=row.get("sources") or [],
            provenance=row.get("provenance") or PROVENANCE_LLM,
            created_at=created_at,
        )

    def to_row(self) -> dict:
        return {
            "fund_id": self.fund_id,
            "as_of_month": self.as_of_month,
            "payload": self.payload,
            "confidence": self.confidence,
            "sources": self.sources,
            "provenance": self.provenance,
            "created_at": self.created_at,
        }

    def first_record(self) -> dict | None:
        return self.payload[0] if self.payload else None


def meets_min_confidence(confidence: str | None, min_confidence: str) -> bool:
    """True when ``confidence`` is at or above the caller's floor."""
    if confidence not in _CONFIDENCE_RANK:
        return False
    return _CONFIDENCE_RANK[confidence] >= _CONFIDENCE_RANK.get(min_confidence, _CONFIDENCE_RANK["high"])


def as_of_month(record: FactRecord, today: date | None = None) -> str:
    """First-of-month date string derived from the record's as-of date."""
    day = today or datetime.now(timezone.utc).date()
    raw = record.as_of()
    if raw:
        try:
            day = date.fromisoformat(raw)
        except ValueError:
            # Matches YYYY-MM-DD but is not a real calendar date
            logger.warning("Ignoring invalid as_of date %r", raw)
    return day.replace(day=1).isoformat()


async def read_fresh_fund_facts(store: DataStore, fund_id: str, ttl_days: int,
                                now: datetime | None = None) -> CacheEntry | None:
    """Return the newest entry for ``fund_id`` created within the TTL window."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=ttl_days)
    row = await store.select_one(
        FUND_FACTS_TABLE,
        eq={"fund_id": fund_id},
        gte={"created_at": cutoff},
        order_by="as_of_month",
        descending=True,
    )
    return CacheEntry.from_row(row) if row else None


async def upsert_fund_facts(store: DataStore, fund_id: str, records: list[FactRecord],
                            now: datetime | None = None) -> CacheEntry:
    """Persist ``records`` as the current entry for ``fund_id``.

    Confidence and sources are taken from the first record, which is the
    only one the single-fund lookup path ever reads back.
    """
    if not records:
        raise ValueError("upsert_fund_facts requires at least one record")
    now = now or datetime.now(timezone.utc)
    first = records[0]
    payload = [r.model_dump(mode="json") for r in records]
    entry = CacheEntry(
        fund_id=fund_id,
        as_of_month=as_of_month(first, now.date()),
        payload=payload,
        confidence=first.confidence,
        sources=payload[0]["sources"],
        provenance=PROVENANCE_LLM,
        created_at=now,
    )
    await store.upsert(FUND_FACTS_TABLE, entry.to_row(), on_conflict="fund_id")
    logger.debug("Cached fund facts for %s (as_of_month=%s)", fund_id, entry.as_of_month)
    return entry
