"""
Structural contract for fact bundles returned by the fact-retrieval API.

Every record coming back from the LLM is untrusted. It is validated here
before any guardrail sees it; a record that does not match raises
FactSchemaError and the caller falls back to deterministic data.
"""

from dataclasses import dataclass
from typing import Annotated, Literal, Union

from pydantic import (
    AnyUrl,
    BaseModel,
    StrictFloat,
    StrictInt,
    StrictStr,
    StringConstraints,
    TypeAdapter,
    ValidationError,
    field_validator,
)

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"

IsoDate = Annotated[StrictStr, StringConstraints(pattern=DATE_PATTERN)]
Number = Union[StrictInt, StrictFloat]
Confidence = Literal["high", "medium", "low"]

_url_adapter = TypeAdapter(AnyUrl)


class FactSchemaError(ValueError):
    """Raised when a fact record does not match the structural contract."""


@dataclass
class FundIdentity:
    """A fund's reference triple as known to the deterministic store."""

    display_name: str | None = None
    registry_code: str | None = None
    isin: str | None = None
    official_name: str | None = None
    latest_nav: float | None = None
    current_value: float | None = None

    def is_identifiable(self) -> bool:
        return bool((self.display_name or "").strip() or (self.registry_code or "").strip())


class FundIdent(BaseModel):
    query_name: StrictStr
    amfi_code: StrictStr | None
    isin: StrictStr | None
    scheme_name_official: StrictStr | None
    plan: Literal["Direct", "Regular"] | None
    option: Literal["Growth", "IDCW"] | None


class Facts(BaseModel):
    category: StrictStr | None
    benchmark: StrictStr | None
    expense_ratio_pct: Number | None
    aum_cr: Number | None


class Performance(BaseModel):
    as_of: IsoDate | None
    cagr_1y: Number | None
    cagr_3y: Number | None
    cagr_5y: Number | None
    ret_ytd: Number | None
    ret_1m: Number | None
    ret_3m: Number | None
    ret_6m: Number | None


class RiskMetrics(BaseModel):
    period: Literal["3Y", "5Y", "1Y"] | None
    as_of: IsoDate | None
    alpha: Number | None
    beta: Number | None
    sharpe_ratio: Number | None
    sortino_ratio: Number | None
    stddev_pct: Number | None
    r_squared: Number | None
    information_ratio: Number | None
    source: StrictStr | None


class SourceCitation(BaseModel):
    field: StrictStr
    url: StrictStr
    as_of: IsoDate | None

    @field_validator("url")
    @classmethod
    def _well_formed_url(cls, value: str) -> str:
        # Stored as given; AnyUrl would normalize it
        _url_adapter.validate_python(value)
        return value


class FactRecord(BaseModel):
    fund_ident: FundIdent
    facts: Facts
    performance: Performance
    risk_metrics: RiskMetrics
    sources: list[SourceCitation]
    confidence: Confidence
    notes: StrictStr | None

    def as_of(self) -> str | None:
        """Performance as-of date, falling back to the risk-metrics one."""
        return self.performance.as_of or self.risk_metrics.as_of


def validate_fact_record(candidate) -> FactRecord:
    try:
        return FactRecord.model_validate(candidate)
    except ValidationError as e:
        raise FactSchemaError(f"Fact record failed schema validation: {e}") from e


def validate_fact_records(parsed) -> list[FactRecord]:
    """Normalize a parsed response body to a list of validated records.

    Single-fund prompts come back as one object, batch prompts as an array.
    """
    if isinstance(parsed, list):
        return [validate_fact_record(item) for item in parsed]
    if isinstance(parsed, dict):
        return [validate_fact_record(parsed)]
    raise FactSchemaError(f"Expected a JSON object or array, got {type(parsed).__name__}")
