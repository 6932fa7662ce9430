"""Unit tests for the job orchestrator.

The extraction collaborator is a local fake that can be held at a gate to
observe in-flight states. Everything else runs for real against the
in-memory store.
"""

import asyncio
import json
from collections.abc import Callable
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import REGISTRY

from services.compliance.stage import ComplianceStage
from services.extraction.base import CollaboratorResponse, ExtractionCollaborator
from services.extraction.stage import ExtractionStage
from services.fraud.stage import FraudStage
from services.market.stage import MarketPriceStage
from services.narrative.base import NarrativeProvider
from services.orchestrator.metrics import get_metrics
from services.orchestrator.orchestrator import Orchestrator
from services.orchestrator.state import JobLookup
from services.persistence.store import InMemoryDecisionStore
from services.shared.config import Settings
from services.shared.errors import CollaboratorUnavailable, JobValidationError
from services.shared.schema import (
    Decision,
    DecisionStatus,
    JobKind,
    JobRequest,
    JobState,
    MatchType,
    Payment,
    StageName,
    StageStatus,
)
from services.shared.stage import StageContext

INDIA_FIELDS: dict[str, Any] = {
    "invoice_number": "INV-2024-001",
    "invoice_date": "2024-01-15",
    "country": "India",
    "customer_name": "Ravi Kumar",
    "place_of_supply": "Karnataka",
    "subtotal": "140000",
    "currency": "INR",
    "line_items": [{"description": "iPhone 15", "quantity": 1, "unit_price": "97069.50"}],
}


class FakeCollaborator(ExtractionCollaborator):
    """Extraction collaborator answering with fixed fields."""

    def __init__(
        self,
        fields: dict[str, Any] | None = None,
        confidence: float = 90.0,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        super().__init__(Settings())
        self.fields = fields if fields is not None else INDIA_FIELDS
        self.confidence = confidence
        self.error = error
        self.gate = gate
        self.calls = 0

    async def extract(self, content: bytes, mime_type: str | None) -> CollaboratorResponse:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return CollaboratorResponse(fields=self.fields, confidence=self.confidence, provider="fake")

    def is_available(self) -> bool:
        return True

    @property
    def provider_name(self) -> str:
        return "fake"


class SlowCompliance(ComplianceStage):
    async def run(self, ctx: StageContext) -> Any:
        await asyncio.sleep(5)
        return self.compute(ctx)


class BrokenMarket(MarketPriceStage):
    async def run(self, ctx: StageContext) -> Any:
        raise RuntimeError("catalog service down")


class SlowMarket(MarketPriceStage):
    async def run(self, ctx: StageContext) -> Any:
        await asyncio.sleep(5)
        return self.compute(ctx)


class LateMarket(MarketPriceStage):
    async def run(self, ctx: StageContext) -> Any:
        await asyncio.sleep(0.2)
        return self.compute(ctx)


class SlowFraud(FraudStage):
    async def run(self, ctx: StageContext) -> Any:
        await asyncio.sleep(0.2)
        return self.compute(ctx)


class StaticNarrative(NarrativeProvider):
    async def narrate(self, stage: StageName, summary: str) -> str | None:
        return f"{stage} looks fine"

    @property
    def provider_name(self) -> str:
        return "static"


class FailingNarrative(NarrativeProvider):
    async def narrate(self, stage: StageName, summary: str) -> str | None:
        raise CollaboratorUnavailable("narrator", "connection refused")

    @property
    def provider_name(self) -> str:
        return "failing"


def webhook_job(job_id: str = "job-1", requires_reconciliation: bool = False) -> JobRequest:
    return JobRequest(
        job_id=job_id,
        kind=JobKind.WEBHOOK,
        payload={
            "invoice_number": "INV-100",
            "amount": "1190.00",
            "currency": "USD",
            "country": "US",
            "product": "Widget",
            "customer_name": "Acme Corp",
            "timestamp": "2024-01-15T10:00:00+00:00",
        },
        requires_reconciliation=requires_reconciliation,
    )


def document_job(job_id: str = "doc-1") -> JobRequest:
    return JobRequest(
        job_id=job_id, kind=JobKind.DOCUMENT, payload=b"%PDF-1.7", mime_type="application/pdf"
    )


def usd_payment(amount: str = "1190.00", reference: str = "INV-100") -> Payment:
    return Payment(payment_id="pay-1", amount=Decimal(amount), currency="USD", reference=reference)


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def settings() -> Settings:
    """Create test settings with short timeouts."""
    return Settings(
        max_workers=4,
        reconciliation_timeout_seconds=2.0,
        narrative_timeout_seconds=1.0,
    )


@pytest.fixture
def store() -> InMemoryDecisionStore:
    """Create an empty in-memory store."""
    return InMemoryDecisionStore()


def build(
    settings: Settings,
    store: InMemoryDecisionStore,
    collaborator: ExtractionCollaborator | None = None,
    **kwargs: Any,
) -> Orchestrator:
    collaborator = collaborator or FakeCollaborator()
    return Orchestrator(
        settings,
        extraction=ExtractionStage(collaborator, settings.extraction_timeout_seconds),
        store=store,
        **kwargs,
    )


async def run_to_decision(orchestrator: Orchestrator, job: JobRequest, **kwargs: Any) -> Decision:
    job_id = await orchestrator.submit_job(job, **kwargs)
    result = await orchestrator.wait_for(job_id, timeout=5.0)
    assert isinstance(result, Decision), result
    return result


class TestDecisions:
    """Test end-to-end decisions."""

    @pytest.mark.asyncio
    async def test_webhook_approved(self, settings: Settings, store: InMemoryDecisionStore) -> None:
        """A clean webhook purchase is approved."""
        orchestrator = build(settings, store)

        decision = await run_to_decision(orchestrator, webhook_job())

        assert decision.status is DecisionStatus.APPROVED
        assert decision.reason_code is None
        assert decision.overall_confidence == 93.33
        reconciliation = decision.result(StageName.RECONCILIATION)
        assert reconciliation is not None
        assert reconciliation.status is StageStatus.SKIPPED
        assert reconciliation.reason == "NOT_REQUIRED"
        assert decision.result(StageName.EXTRACTION).confidence == 100.0  # type: ignore[union-attr]
        assert await store.load_decision("job-1") == decision

    @pytest.mark.asyncio
    async def test_audit_trail(self, settings: Settings, store: InMemoryDecisionStore) -> None:
        """The audit log is ordered and ends in DONE."""
        orchestrator = build(settings, store)
        decision = await run_to_decision(orchestrator, webhook_job())

        audit = await store.load_audit("job-1")

        assert [e.sequence for e in audit] == list(range(len(audit)))
        assert audit[0].event == "SUBMITTED"
        states = [e.state for e in audit if e.event == "STATE_CHANGED"]
        assert states == [
            JobState.EXTRACTING,
            JobState.ANALYZING,
            JobState.AGGREGATING,
            JobState.DONE,
        ]
        assert decision.audit_log == tuple(audit)
        assert decision.audit_log[-1].state is JobState.DONE

    @pytest.mark.asyncio
    async def test_india_document(self, settings: Settings, store: InMemoryDecisionStore) -> None:
        """A scanned Indian invoice gets split GST, market and fraud results."""
        orchestrator = build(settings, store)

        decision = await run_to_decision(orchestrator, document_job())

        compliance = decision.result(StageName.COMPLIANCE).value  # type: ignore[union-attr]
        market = decision.result(StageName.MARKET).value  # type: ignore[union-attr]
        fraud = decision.result(StageName.FRAUD).value  # type: ignore[union-attr]
        assert compliance.computed_tax == Decimal("25200.00")
        assert market.variance_pct == Decimal("19.25")
        assert fraud.risk_score == 20
        assert decision.status is DecisionStatus.APPROVED

    @pytest.mark.asyncio
    async def test_extraction_failure_rejected(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """A fatal OCR error rejects the job with no analysis results."""
        collaborator = FakeCollaborator(error=CollaboratorUnavailable("fake", "ocr down"))
        orchestrator = build(settings, store, collaborator)

        decision = await run_to_decision(orchestrator, document_job())

        assert decision.status is DecisionStatus.REJECTED
        assert decision.reason_code == "EXTRACTION_FAILED"
        assert decision.stage_results == {StageName.EXTRACTION: None}
        assert decision.overall_confidence == 0.0
        assert (await store.load_audit("doc-1"))[-1].state is JobState.FAILED
        assert decision.audit_log[-1].state is JobState.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_error(self, settings: Settings, store: InMemoryDecisionStore) -> None:
        """An unexpected error fails the job with a decision needing review."""
        extraction = MagicMock()
        extraction.extract = AsyncMock(side_effect=RuntimeError("bug"))
        orchestrator = Orchestrator(settings, extraction=extraction, store=store)

        decision = await run_to_decision(orchestrator, webhook_job())

        assert decision.status is DecisionStatus.NEEDS_REVIEW
        assert decision.reason_code == "INTERNAL_ERROR"
        assert (await store.load_audit("job-1"))[-1].state is JobState.FAILED

    @pytest.mark.asyncio
    async def test_numeric_sku_document(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """An OCR line item with a numeric SKU is analyzed, not failed."""
        fields = {
            **INDIA_FIELDS,
            "line_items": [{"description": "iPhone 15", "sku": 4711, "unit_price": "97069.50"}],
        }
        orchestrator = build(settings, store, FakeCollaborator(fields=fields))

        decision = await run_to_decision(orchestrator, document_job())

        draft = decision.result(StageName.EXTRACTION).value  # type: ignore[union-attr]
        assert draft.line_items[0].product_key == "4711"
        assert decision.reason_code != "INTERNAL_ERROR"
        assert decision.result(StageName.COMPLIANCE).status is StageStatus.SUCCESS  # type: ignore[union-attr]
        assert decision.result(StageName.MARKET).status is StageStatus.SUCCESS  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_malformed_field_map_rejected(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """An OCR field map that is not an invoice rejects the job."""
        fields = {**INDIA_FIELDS, "line_items": "iPhone 15"}
        orchestrator = build(settings, store, FakeCollaborator(fields=fields))

        decision = await run_to_decision(orchestrator, document_job())

        assert decision.status is DecisionStatus.REJECTED
        assert decision.reason_code == "EXTRACTION_FAILED"

    @pytest.mark.asyncio
    async def test_numeric_invoice_number_webhook(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """A webhook with a numeric invoice number is accepted and approved."""
        job = webhook_job()
        assert isinstance(job.payload, dict)
        job = job.model_copy(update={"payload": {**job.payload, "invoice_number": 12345}})
        orchestrator = build(settings, store)

        decision = await run_to_decision(orchestrator, job)

        assert decision.status is DecisionStatus.APPROVED
        extraction = decision.result(StageName.EXTRACTION)
        assert extraction is not None
        assert extraction.value.invoice_number == "12345"  # type: ignore[union-attr]


class FlakyStore(InMemoryDecisionStore):
    """In-memory store whose first ``failures`` decision saves raise."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def save_decision(self, decision: Decision) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("store offline")
        await super().save_decision(decision)


class GatedStore(InMemoryDecisionStore):
    """In-memory store that holds decision saves until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.saving = asyncio.Event()

    async def save_decision(self, decision: Decision) -> None:
        self.saving.set()
        await self.gate.wait()
        await super().save_decision(decision)


class TestDecisionPersistence:
    """Test the ordering of decision saves and terminal states."""

    @pytest.mark.asyncio
    async def test_failed_save_needs_review(self, settings: Settings) -> None:
        """A decision the store rejects is never reported; the job fails for review."""
        store = FlakyStore(failures=1)
        orchestrator = build(settings, store)

        decision = await run_to_decision(orchestrator, webhook_job())

        assert decision.status is DecisionStatus.NEEDS_REVIEW
        assert decision.reason_code == "PERSISTENCE_FAILED"
        assert await store.load_decision("job-1") == decision
        audit = await store.load_audit("job-1")
        assert audit[-1].state is JobState.FAILED
        assert JobState.DONE not in [e.state for e in audit]

    @pytest.mark.asyncio
    async def test_store_down_keeps_decision_in_memory(self, settings: Settings) -> None:
        """When every save fails the job still ends with a review decision."""
        store = FlakyStore(failures=10)
        orchestrator = build(settings, store)

        decision = await run_to_decision(orchestrator, webhook_job())

        assert decision.status is DecisionStatus.NEEDS_REVIEW
        assert decision.reason_code == "PERSISTENCE_FAILED"
        assert await store.load_decision("job-1") is None

    @pytest.mark.asyncio
    async def test_pending_until_saved(self, settings: Settings) -> None:
        """The job is not terminal and cannot be cancelled while saving."""
        store = GatedStore()
        orchestrator = build(settings, store)
        await orchestrator.submit_job(webhook_job())
        await eventually(store.saving.is_set)

        assert await orchestrator.get_decision("job-1") is JobLookup.PENDING
        assert await orchestrator.cancel_job("job-1") is False

        store.gate.set()
        decision = await orchestrator.wait_for("job-1", timeout=5.0)
        assert isinstance(decision, Decision)
        assert decision.status is DecisionStatus.APPROVED
        assert (await store.load_audit("job-1"))[-1].state is JobState.DONE


class TestDegradation:
    """Test stage fallbacks."""

    @pytest.mark.asyncio
    async def test_slow_compliance_degrades(self, store: InMemoryDecisionStore) -> None:
        """A timed-out stage is replaced by its fallback and needs review."""
        settings = Settings(compliance_timeout_seconds=0.05)
        orchestrator = build(
            settings, store, stages={StageName.COMPLIANCE: SlowCompliance()}
        )

        decision = await run_to_decision(orchestrator, webhook_job())

        compliance = decision.result(StageName.COMPLIANCE)
        assert compliance is not None
        assert compliance.status is StageStatus.DEGRADED
        assert compliance.reason == "STAGE_TIMEOUT"
        assert compliance.value.is_compliant  # type: ignore[union-attr]
        assert decision.status is DecisionStatus.NEEDS_REVIEW
        assert decision.reason_code == "STAGE_DEGRADED:compliance"
        assert decision.overall_confidence < 93.33

    @pytest.mark.asyncio
    async def test_failing_market_degrades(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """A stage error is recorded with its type and message."""
        orchestrator = build(settings, store, stages={StageName.MARKET: BrokenMarket()})

        decision = await run_to_decision(orchestrator, webhook_job())

        market = decision.result(StageName.MARKET)
        assert market is not None
        assert market.status is StageStatus.DEGRADED
        assert market.reason == "RuntimeError: catalog service down"
        assert decision.result(StageName.FRAUD).status is StageStatus.SUCCESS  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_fraud_without_market(self, store: InMemoryDecisionStore) -> None:
        """Fraud scores without market data when the verdict is late."""
        settings = Settings(fraud_timeout_seconds=0.05, market_timeout_seconds=0.2)
        orchestrator = build(settings, store, stages={StageName.MARKET: SlowMarket()})

        decision = await run_to_decision(orchestrator, webhook_job())

        fraud = decision.result(StageName.FRAUD)
        assert fraud is not None
        assert fraud.status is StageStatus.DEGRADED
        assert fraud.reason == "MARKET_UNAVAILABLE"
        assert "STAGE_DEGRADED:fraud" in decision.flags
        assert "STAGE_DEGRADED:market" in decision.flags

    @pytest.mark.asyncio
    async def test_fraud_without_market_timed(self, store: InMemoryDecisionStore) -> None:
        """A fraud result scored without market data still records its duration."""
        settings = Settings(fraud_timeout_seconds=0.05, market_timeout_seconds=0.2)
        orchestrator = build(settings, store, stages={StageName.MARKET: SlowMarket()})
        labels = {"stage": "fraud"}
        before = REGISTRY.get_sample_value("pipeline_stage_duration_seconds_count", labels) or 0

        decision = await run_to_decision(orchestrator, webhook_job())

        fraud = decision.result(StageName.FRAUD)
        assert fraud is not None
        assert fraud.duration_ms is not None
        assert fraud.duration_ms >= 50
        after = REGISTRY.get_sample_value("pipeline_stage_duration_seconds_count", labels)
        assert after == before + 1

    @pytest.mark.asyncio
    async def test_fraud_budget_includes_market_wait(self, store: InMemoryDecisionStore) -> None:
        """Time spent waiting for market counts against the fraud timeout."""
        settings = Settings(fraud_timeout_seconds=0.3, market_timeout_seconds=1.0)
        orchestrator = build(
            settings,
            store,
            stages={StageName.MARKET: LateMarket(), StageName.FRAUD: SlowFraud()},
        )

        decision = await run_to_decision(orchestrator, webhook_job())

        assert decision.result(StageName.MARKET).status is StageStatus.SUCCESS  # type: ignore[union-attr]
        fraud = decision.result(StageName.FRAUD)
        assert fraud is not None
        assert fraud.status is StageStatus.DEGRADED
        assert fraud.reason == "STAGE_TIMEOUT"
        assert fraud.duration_ms is not None
        assert fraud.duration_ms < 400


class TestReconciliation:
    """Test payment correlation and the reconciliation deadline."""

    @pytest.mark.asyncio
    async def test_payment_resumes_job(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """A matching payment resumes the parked job."""
        orchestrator = build(settings, store)
        await orchestrator.submit_job(webhook_job(requires_reconciliation=True))
        await eventually(lambda: orchestrator.correlator.parked_count == 1)

        assert await orchestrator.get_decision("job-1") is JobLookup.PENDING
        assert await orchestrator.notify_payment(usd_payment()) is True

        decision = await orchestrator.wait_for("job-1", timeout=5.0)
        assert isinstance(decision, Decision)
        match = decision.result(StageName.RECONCILIATION).value  # type: ignore[union-attr]
        assert match.match_type is MatchType.EXACT
        assert decision.status is DecisionStatus.APPROVED
        assert decision.overall_confidence == 94.0

    @pytest.mark.asyncio
    async def test_early_payment_buffered(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """A payment delivered before its job is claimed when the job parks."""
        orchestrator = build(settings, store)

        assert await orchestrator.notify_payment(usd_payment()) is False
        decision = await run_to_decision(orchestrator, webhook_job(requires_reconciliation=True))

        assert decision.status is DecisionStatus.APPROVED
        assert orchestrator.correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_deadline_skips_reconciliation(self, store: InMemoryDecisionStore) -> None:
        """Without a payment the job proceeds and needs review."""
        settings = Settings(reconciliation_timeout_seconds=0.05)
        orchestrator = build(settings, store)

        decision = await run_to_decision(orchestrator, webhook_job(requires_reconciliation=True))

        reconciliation = decision.result(StageName.RECONCILIATION)
        assert reconciliation is not None
        assert reconciliation.status is StageStatus.SKIPPED
        assert decision.status is DecisionStatus.NEEDS_REVIEW
        assert decision.reason_code == "RECONCILIATION_SKIPPED"
        events = [e.event for e in await store.load_audit("job-1")]
        assert "RECONCILIATION_SKIPPED" in events

    @pytest.mark.asyncio
    async def test_unmatched_payment(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """A short payment needs review."""
        orchestrator = build(settings, store)
        await orchestrator.notify_payment(usd_payment(amount="1000.00"))

        decision = await run_to_decision(orchestrator, webhook_job(requires_reconciliation=True))

        assert decision.status is DecisionStatus.NEEDS_REVIEW
        assert decision.reason_code == "PAYMENT_UNMATCHED"


class TestIdempotence:
    """Test duplicate submission and reprocessing."""

    @pytest.mark.asyncio
    async def test_in_flight_duplicate_merged(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """Submitting a running job id again does not start a second run."""
        gate = asyncio.Event()
        collaborator = FakeCollaborator(gate=gate)
        orchestrator = build(settings, store, collaborator)

        await orchestrator.submit_job(document_job())
        await eventually(lambda: collaborator.calls == 1)
        assert await orchestrator.submit_job(document_job()) == "doc-1"

        gate.set()
        await orchestrator.wait_for("doc-1", timeout=5.0)
        assert collaborator.calls == 1

    @pytest.mark.asyncio
    async def test_stored_decision_returned(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """A finished job is not recomputed."""
        collaborator = FakeCollaborator()
        orchestrator = build(settings, store, collaborator)
        first = await run_to_decision(orchestrator, document_job())

        second = await run_to_decision(orchestrator, document_job())

        assert second == first
        assert collaborator.calls == 1

    @pytest.mark.asyncio
    async def test_decision_survives_restart(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """A new orchestrator over the same store returns the stored decision."""
        first = await run_to_decision(build(settings, store), document_job())
        collaborator = FakeCollaborator()
        restarted = build(settings, store, collaborator)

        assert await restarted.submit_job(document_job()) == "doc-1"
        assert await restarted.get_decision("doc-1") == first
        assert collaborator.calls == 0

    @pytest.mark.asyncio
    async def test_reprocess_bumps_version(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """Reprocessing writes the next version and continues the audit log."""
        collaborator = FakeCollaborator()
        orchestrator = build(settings, store, collaborator)
        first = await run_to_decision(orchestrator, document_job())

        second = await run_to_decision(orchestrator, document_job(), reprocess=True)

        assert (first.version, second.version) == (1, 2)
        assert collaborator.calls == 2
        assert (await store.load_decision("doc-1", version=1)) == first
        audit = await store.load_audit("doc-1")
        assert [e.sequence for e in audit] == list(range(len(audit)))
        assert [e.event for e in audit].count("SUBMITTED") == 2


class TestCancellation:
    """Test cancellation from in-flight states."""

    @pytest.mark.asyncio
    async def test_cancel_during_extraction(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """A cancelled job writes no decision."""
        collaborator = FakeCollaborator(gate=asyncio.Event())
        orchestrator = build(settings, store, collaborator)
        await orchestrator.submit_job(document_job())
        await eventually(lambda: collaborator.calls == 1)

        assert await orchestrator.cancel_job("doc-1") is True

        assert await orchestrator.wait_for("doc-1", timeout=5.0) is JobLookup.CANCELLED
        assert await store.load_decision("doc-1") is None
        assert (await store.load_audit("doc-1"))[-1].state is JobState.CANCELLED
        assert await orchestrator.cancel_job("doc-1") is False

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_payment(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """A parked job can be cancelled and its payment wait released."""
        orchestrator = build(settings, store)
        await orchestrator.submit_job(webhook_job(requires_reconciliation=True))
        await eventually(lambda: orchestrator.correlator.parked_count == 1)

        assert await orchestrator.cancel_job("job-1") is True

        assert await orchestrator.wait_for("job-1", timeout=5.0) is JobLookup.CANCELLED
        assert orchestrator.correlator.parked_count == 0
        assert await store.load_decision("job-1") is None

    @pytest.mark.asyncio
    async def test_cancelled_job_not_rerun(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """Resubmitting a cancelled job needs reprocess."""
        collaborator = FakeCollaborator(gate=asyncio.Event())
        orchestrator = build(settings, store, collaborator)
        await orchestrator.submit_job(document_job())
        await eventually(lambda: collaborator.calls == 1)
        await orchestrator.cancel_job("doc-1")
        await orchestrator.wait_for("doc-1", timeout=5.0)

        await orchestrator.submit_job(document_job())
        assert collaborator.calls == 1

        collaborator.gate = None
        decision = await run_to_decision(orchestrator, document_job(), reprocess=True)
        assert decision.version == 1


class TestScheduling:
    """Test the worker pool and per-job rule snapshots."""

    @pytest.mark.asyncio
    async def test_pool_bound(self, store: InMemoryDecisionStore) -> None:
        """No more than max_workers jobs execute at once."""
        gate = asyncio.Event()
        collaborator = FakeCollaborator(gate=gate)
        orchestrator = build(Settings(max_workers=1), store, collaborator)

        await orchestrator.submit_job(document_job("doc-1"))
        await orchestrator.submit_job(document_job("doc-2"))
        await eventually(lambda: collaborator.calls == 1)
        await asyncio.sleep(0.05)
        assert collaborator.calls == 1

        gate.set()
        await orchestrator.wait_for("doc-1", timeout=5.0)
        await orchestrator.wait_for("doc-2", timeout=5.0)
        assert collaborator.calls == 2

    @pytest.mark.asyncio
    async def test_parked_job_frees_slot(self, store: InMemoryDecisionStore) -> None:
        """A job waiting for payment does not block the pool."""
        orchestrator = build(
            Settings(max_workers=1, reconciliation_timeout_seconds=5.0), store
        )
        await orchestrator.submit_job(webhook_job("job-1", requires_reconciliation=True))
        await eventually(lambda: orchestrator.correlator.parked_count == 1)

        other = await run_to_decision(orchestrator, webhook_job("job-2"))
        assert other.status is DecisionStatus.APPROVED

        await orchestrator.notify_payment(usd_payment())
        parked = await orchestrator.wait_for("job-1", timeout=5.0)
        assert isinstance(parked, Decision)

    @pytest.mark.asyncio
    async def test_rules_snapshot_per_job(
        self, settings: Settings, store: InMemoryDecisionStore, tmp_path: Path
    ) -> None:
        """A reload during a job does not change that job's rules."""
        gate = asyncio.Event()
        collaborator = FakeCollaborator(gate=gate)
        orchestrator = build(settings, store, collaborator)
        rules_file = tmp_path / "rules.json"
        rules_file.write_text(
            json.dumps(
                {
                    "version": "2025.1",
                    "jurisdictions": {"IN": {"tax_label": "GST", "rate": "0.28"}},
                    "country_aliases": {"india": "IN"},
                }
            )
        )

        await orchestrator.submit_job(document_job("doc-1"))
        await eventually(lambda: collaborator.calls == 1)
        orchestrator.reload_rules(str(rules_file))
        gate.set()
        before = await orchestrator.wait_for("doc-1", timeout=5.0)
        after = await run_to_decision(orchestrator, document_job("doc-2"))

        assert isinstance(before, Decision)
        assert before.result(StageName.COMPLIANCE).value.computed_tax == Decimal("25200.00")  # type: ignore[union-attr]
        assert after.result(StageName.COMPLIANCE).value.computed_tax == Decimal("39200.00")  # type: ignore[union-attr]
        assert (await store.load_audit("doc-1"))[1].detail == "rules 2024.1"


class TestNarratives:
    """Test the optional narrative collaborator."""

    @pytest.mark.asyncio
    async def test_narratives_attached(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """Executed stages receive narratives."""
        orchestrator = build(settings, store, narrative=StaticNarrative(settings))

        decision = await run_to_decision(orchestrator, webhook_job())

        assert decision.result(StageName.COMPLIANCE).narrative == "compliance looks fine"  # type: ignore[union-attr]
        assert decision.result(StageName.RECONCILIATION).narrative is None  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_narrative_failure_ignored(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """Narrative errors never change the decision."""
        orchestrator = build(settings, store, narrative=FailingNarrative(settings))

        decision = await run_to_decision(orchestrator, webhook_job())

        assert decision.status is DecisionStatus.APPROVED
        assert decision.overall_confidence == 93.33
        assert all(r is None or r.narrative is None for r in decision.stage_results.values())


class TestInterface:
    """Test submission validation, lookups and shutdown."""

    @pytest.mark.asyncio
    async def test_invalid_job_not_queued(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """A malformed job raises and leaves no trace."""
        orchestrator = build(settings, store)
        job = JobRequest(job_id="bad", kind=JobKind.WEBHOOK, payload={"amount": 5})

        with pytest.raises(JobValidationError):
            await orchestrator.submit_job(job)

        assert await orchestrator.get_decision("bad") is JobLookup.NOT_FOUND
        assert await store.load_audit("bad") == []

    @pytest.mark.asyncio
    async def test_pending_while_running(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """A running job reports PENDING."""
        collaborator = FakeCollaborator(gate=asyncio.Event())
        orchestrator = build(settings, store, collaborator)
        await orchestrator.submit_job(document_job())

        assert await orchestrator.get_decision("doc-1") is JobLookup.PENDING
        await orchestrator.aclose()
        assert await orchestrator.get_decision("doc-1") is JobLookup.CANCELLED

    @pytest.mark.asyncio
    async def test_metrics_exported(
        self, settings: Settings, store: InMemoryDecisionStore
    ) -> None:
        """Decisions are counted in the Prometheus output."""
        await run_to_decision(build(settings, store), webhook_job())

        output, _ = get_metrics()

        assert b"pipeline_decisions_total" in output
        assert b"pipeline_stage_results_total" in output
