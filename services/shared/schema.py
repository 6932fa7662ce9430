"""Data models shared by the pipeline stages and the orchestrator.

Models that cross a stage boundary are frozen: an InvoiceDraft is produced
once by extraction and only read afterwards, and a Decision is immutable once
written.
"""

import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobKind(StrEnum):
    DOCUMENT = "DOCUMENT"
    WEBHOOK = "WEBHOOK"


class JobState(StrEnum):
    QUEUED = "QUEUED"
    EXTRACTING = "EXTRACTING"
    ANALYZING = "ANALYZING"
    WAITING_PAYMENT = "WAITING_PAYMENT"
    AGGREGATING = "AGGREGATING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class DecisionStatus(StrEnum):
    APPROVED = "APPROVED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    REJECTED = "REJECTED"


class StageName(StrEnum):
    EXTRACTION = "extraction"
    COMPLIANCE = "compliance"
    FRAUD = "fraud"
    MARKET = "market"
    RECONCILIATION = "reconciliation"


class StageStatus(StrEnum):
    SUCCESS = "SUCCESS"
    DEGRADED = "DEGRADED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class Severity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Recommendation(StrEnum):
    FAIR_PRICE = "FAIR_PRICE"
    OVERPRICED = "OVERPRICED"
    GREAT_DEAL = "GREAT_DEAL"
    UNKNOWN = "UNKNOWN"


class MatchType(StrEnum):
    EXACT = "EXACT"
    PARTIAL = "PARTIAL"
    UNCLEAR = "UNCLEAR"


class TransactionType(StrEnum):
    B2B = "B2B"
    B2C = "B2C"


class JobRequest(BaseModel):
    """A unit of work submitted to the orchestrator.

    Attributes:
        job_id: Caller-supplied or generated unique identifier
        kind: DOCUMENT (bytes for the OCR collaborator) or WEBHOOK (JSON payload)
        payload: Document bytes or webhook JSON object
        mime_type: MIME type of document payloads
        requires_reconciliation: Whether the job must wait for a payment
        expected_payment_reference: Correlation key overriding the invoice number
        received_at: Acceptance timestamp
    """

    model_config = ConfigDict(frozen=True)

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: JobKind
    payload: bytes | dict[str, Any]
    mime_type: str | None = None
    requires_reconciliation: bool = False
    expected_payment_reference: str | None = None
    received_at: datetime = Field(default_factory=utcnow)


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal | None = None
    amount: Decimal | None = None
    product_key: str | None = None
    category: str | None = None


class InvoiceDraft(BaseModel):
    """Structured invoice produced by the extraction stage.

    ``field_confidence`` maps field names to a 0-100 confidence. ``attributes``
    holds jurisdiction-specific fields (place of supply, SAC code, ...).
    """

    model_config = ConfigDict(frozen=True)

    invoice_number: str | None = None
    issue_date: date | None = None
    country: str | None = None
    customer_name: str | None = None
    line_items: tuple[LineItem, ...] = ()
    subtotal: Decimal | None = None
    tax_amount: Decimal | None = None
    total: Decimal | None = None
    currency: str = "USD"
    buyer_tax_id: str | None = None
    seller_tax_id: str | None = None
    transaction_type: TransactionType = TransactionType.B2C
    attributes: dict[str, str] = Field(default_factory=dict)
    field_confidence: dict[str, float] = Field(default_factory=dict)
    source: str = "document"

    @field_validator("field_confidence")
    @classmethod
    def _clamp_confidence(cls, value: dict[str, float]) -> dict[str, float]:
        return {k: max(0.0, min(100.0, float(v))) for k, v in value.items()}

    @property
    def effective_total(self) -> Decimal | None:
        """Declared total, falling back to subtotal plus declared tax."""
        if self.total is not None:
            return self.total
        if self.subtotal is None:
            return None
        return self.subtotal + (self.tax_amount or Decimal("0"))

    @property
    def effective_subtotal(self) -> Decimal | None:
        """Declared subtotal, falling back to the sum of line item amounts."""
        if self.subtotal is not None:
            return self.subtotal
        amounts = [item.amount for item in self.line_items if item.amount is not None]
        if amounts:
            return sum(amounts, Decimal("0"))
        return None


class TaxComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    rate: Decimal
    amount: Decimal


class ComplianceVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_compliant: bool
    jurisdiction: str | None
    tax_breakdown: tuple[TaxComponent, ...] = ()
    missing_fields: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    computed_tax: Decimal | None = None
    computed_total: Decimal | None = None
    invoice_format_name: str | None = None
    reverse_charge: bool = False


class Anomaly(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    severity: Severity
    message: str


class FraudSignal(BaseModel):
    model_config = ConfigDict(frozen=True)

    risk_score: int = Field(ge=0, le=100)
    anomalies: tuple[Anomaly, ...] = ()


class MarketVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_key: str | None = None
    reference_avg: Decimal | None
    paid_amount: Decimal | None
    variance_pct: Decimal | None
    recommendation: Recommendation


class Payment(BaseModel):
    """A payment delivered out of band, correlated to a job by reference."""

    model_config = ConfigDict(frozen=True)

    payment_id: str
    amount: Decimal
    currency: str = "USD"
    reference: str | None = None
    job_id: str | None = None
    received_at: datetime = Field(default_factory=utcnow)


class ReconciliationMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    matched: bool
    match_type: MatchType
    difference: Decimal
    confidence: int = Field(ge=0, le=100)
    suggestions: tuple[str, ...] = ()


StageValue = InvoiceDraft | ComplianceVerdict | FraudSignal | MarketVerdict | ReconciliationMatch

_STAGE_VALUE_TYPES: dict[StageName, type[BaseModel]] = {
    StageName.EXTRACTION: InvoiceDraft,
    StageName.COMPLIANCE: ComplianceVerdict,
    StageName.FRAUD: FraudSignal,
    StageName.MARKET: MarketVerdict,
    StageName.RECONCILIATION: ReconciliationMatch,
}


class StageResult(BaseModel):
    """Tagged outcome of one stage.

    SUCCESS and DEGRADED carry a value and a confidence; SKIPPED and FAILED
    carry a reason and no confidence.
    """

    model_config = ConfigDict(frozen=True)

    stage: StageName
    status: StageStatus
    value: StageValue | None = None
    confidence: float | None = Field(default=None, ge=0, le=100)
    reason: str | None = None
    narrative: str | None = None
    duration_ms: float | None = None

    @model_validator(mode="before")
    @classmethod
    def _value_type_from_stage(cls, data: Any) -> Any:
        # Stored decisions come back as plain dicts; pick the value model by stage
        if isinstance(data, dict) and isinstance(data.get("value"), dict):
            value_type = _STAGE_VALUE_TYPES[StageName(data["stage"])]
            data = {**data, "value": value_type.model_validate(data["value"])}
        return data

    @property
    def executed(self) -> bool:
        return self.status in (StageStatus.SUCCESS, StageStatus.DEGRADED)

    @classmethod
    def success(cls, stage: StageName, value: StageValue, confidence: float) -> "StageResult":
        return cls(stage=stage, status=StageStatus.SUCCESS, value=value, confidence=confidence)

    @classmethod
    def degraded(
        cls, stage: StageName, value: StageValue, confidence: float, reason: str
    ) -> "StageResult":
        return cls(
            stage=stage,
            status=StageStatus.DEGRADED,
            value=value,
            confidence=confidence,
            reason=reason,
        )

    @classmethod
    def skipped(cls, stage: StageName, reason: str) -> "StageResult":
        return cls(stage=stage, status=StageStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, stage: StageName, reason: str) -> "StageResult":
        return cls(stage=stage, status=StageStatus.FAILED, reason=reason)


class AuditEntry(BaseModel):
    """One append-only audit record. Ordered by ``sequence`` within a job."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    sequence: int
    event: str
    state: JobState | None = None
    stage: StageName | None = None
    detail: str | None = None
    at: datetime = Field(default_factory=utcnow)


class Decision(BaseModel):
    """Terminal outcome of a job. Reprocessing writes a new version."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    version: int = 1
    status: DecisionStatus
    reason_code: str | None = None
    flags: tuple[str, ...] = ()
    stage_results: dict[StageName, StageResult | None]
    overall_confidence: float = Field(ge=0, le=100)
    created_at: datetime = Field(default_factory=utcnow)
    audit_log: tuple[AuditEntry, ...] = ()

    def result(self, stage: StageName) -> StageResult | None:
        return self.stage_results.get(stage)
