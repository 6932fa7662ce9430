"""Job orchestrator for the invoice decision pipeline.

Each accepted job runs as one asyncio task:

    QUEUED -> EXTRACTING -> ANALYZING -> [WAITING_PAYMENT ->] AGGREGATING -> DONE

Extraction failure ends the job in FAILED with a REJECTED decision.
CANCELLED is reachable from any non-terminal state and writes no decision.

Concurrency:
- A semaphore bounds the number of jobs executing at once. A job parked in
  WAITING_PAYMENT holds no slot.
- Compliance, market and fraud run as concurrent child tasks. Fraud uses the
  market verdict if it arrives within the fraud timeout.
- A stage that fails or exceeds its timeout is replaced by its deterministic
  fallback and recorded DEGRADED.
- Each job reads one RuleTables snapshot for its whole run.
"""

import asyncio
import logging
import time
from dataclasses import replace

from services.compliance.stage import ComplianceStage
from services.extraction.factory import create_extraction_collaborator
from services.extraction.stage import ExtractionStage, validate_job_request
from services.fraud.stage import FraudStage
from services.market.stage import DEFAULT_CATALOG, MarketPriceStage, ReferenceCatalog
from services.narrative.base import (
    NarrativeProvider,
    NullNarrativeProvider,
    create_narrative_provider,
)
from services.orchestrator.aggregation import decide, overall_confidence
from services.orchestrator.correlator import CorrelationOutcome, PaymentCorrelator
from services.orchestrator.metrics import (
    decisions_total,
    jobs_submitted_total,
    payments_notified_total,
    stage_duration_seconds,
    stage_results_total,
)
from services.orchestrator.state import JobLookup, JobRecord
from services.persistence.store import DecisionStore, create_decision_store
from services.reconciliation.stage import ReconciliationStage
from services.rules.store import RuleTableStore, create_rule_table_store
from services.rules.tables import RuleTables
from services.shared.config import Settings, get_settings
from services.shared.errors import (
    DecisionNotPersisted,
    ExtractionFailure,
    PipelineError,
    ReconciliationTimeout,
    StageTimeout,
)
from services.shared.schema import (
    AuditEntry,
    Decision,
    DecisionStatus,
    InvoiceDraft,
    JobRequest,
    JobState,
    Payment,
    StageName,
    StageResult,
    StageStatus,
)
from services.shared.stage import AnalysisStage, StageContext

logger = logging.getLogger(__name__)

NOT_REQUIRED = "NOT_REQUIRED"
MARKET_UNAVAILABLE = "MARKET_UNAVAILABLE"
INTERNAL_ERROR = "INTERNAL_ERROR"


class Orchestrator:
    """Runs jobs through extraction, analysis, reconciliation and aggregation."""

    def __init__(
        self,
        settings: Settings,
        extraction: ExtractionStage,
        store: DecisionStore,
        rules: RuleTableStore | None = None,
        catalog: ReferenceCatalog = DEFAULT_CATALOG,
        narrative: NarrativeProvider | None = None,
        stages: dict[StageName, AnalysisStage] | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            settings: Pool size, timeouts and degradation factor
            extraction: Extraction stage wrapping the OCR collaborator
            store: Decision and audit persistence
            rules: Active rule tables (defaults shipped tables)
            catalog: Reference prices for the market stage
            narrative: Optional reasoning generator
            stages: Overrides for the analysis stages, keyed by name
        """
        self.settings = settings
        self.extraction = extraction
        self.store = store
        self.rules = rules or RuleTableStore()
        self.narrative = narrative or NullNarrativeProvider(settings)
        self.stages: dict[StageName, AnalysisStage] = {
            StageName.COMPLIANCE: ComplianceStage(),
            StageName.FRAUD: FraudStage(),
            StageName.MARKET: MarketPriceStage(catalog),
            StageName.RECONCILIATION: ReconciliationStage(),
        }
        self.stages.update(stages or {})
        self.timeouts: dict[StageName, float] = {
            StageName.COMPLIANCE: settings.compliance_timeout_seconds,
            StageName.FRAUD: settings.fraud_timeout_seconds,
            StageName.MARKET: settings.market_timeout_seconds,
            StageName.RECONCILIATION: settings.reconciliation_stage_timeout_seconds,
        }
        self.correlator = PaymentCorrelator(settings.pending_payment_limit)
        self._slots = asyncio.Semaphore(settings.max_workers)
        self._jobs: dict[str, JobRecord] = {}

    # Public interface

    async def submit_job(self, job: JobRequest, reprocess: bool = False) -> str:
        """Accept a job and start it in the background.

        A job id already in flight is merged into the running job. A job id
        that already has a decision is not recomputed unless ``reprocess`` is
        set, in which case the new decision is written as the next version.

        Returns:
            The job id

        Raises:
            JobValidationError: Malformed request; nothing is queued
        """
        validate_job_request(job)
        job_id = job.job_id

        record = self._jobs.get(job_id)
        if record is not None and not record.terminal:
            logger.info(f"Job {job_id} already in flight; duplicate submission merged")
            return job_id
        if record is not None and record.state is JobState.CANCELLED and not reprocess:
            logger.info(f"Job {job_id} was cancelled; resubmit with reprocess to run it again")
            return job_id

        existing = await self.store.load_decision(job_id)
        if existing is not None and not reprocess:
            logger.info(f"Job {job_id} already decided (v{existing.version}); returning stored")
            return job_id
        version = existing.version + 1 if existing is not None else 1
        sequence = len(await self.store.load_audit(job_id))

        # Another submission may have started the job while the store was read
        record = self._jobs.get(job_id)
        if record is not None and not record.terminal:
            logger.info(f"Job {job_id} already in flight; duplicate submission merged")
            return job_id

        record = JobRecord(job=job, version=version, sequence=sequence)
        self._jobs[job_id] = record
        entry = record.record("SUBMITTED", detail=f"{job.kind} v{version}")
        await self.store.append_audit(entry)
        record.task = asyncio.create_task(self._run(record), name=f"job-{job_id}")
        jobs_submitted_total.labels(kind=job.kind).inc()
        logger.info(f"Job {job_id} accepted ({job.kind}, v{version})")
        return job_id

    async def get_decision(self, job_id: str) -> Decision | JobLookup:
        """Return the latest decision, or PENDING, CANCELLED or NOT_FOUND."""
        record = self._jobs.get(job_id)
        if record is not None:
            if not record.terminal:
                return JobLookup.PENDING
            if record.state is JobState.CANCELLED:
                return JobLookup.CANCELLED
            if record.decision is not None:
                return record.decision
        decision = await self.store.load_decision(job_id)
        return decision if decision is not None else JobLookup.NOT_FOUND

    async def wait_for(self, job_id: str, timeout: float | None = None) -> Decision | JobLookup:
        """Wait until the job leaves the pipeline, then return ``get_decision``."""
        record = self._jobs.get(job_id)
        if record is not None and record.task is not None and not record.task.done():
            await asyncio.wait({record.task}, timeout=timeout)
        return await self.get_decision(job_id)

    async def notify_payment(self, payment: Payment) -> bool:
        """Deliver a payment. True when it resumed a parked job, False when buffered."""
        outcome = self.correlator.offer(payment)
        payments_notified_total.labels(outcome=outcome).inc()
        return outcome is CorrelationOutcome.CORRELATED

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a non-terminal job. No decision is written for it."""
        record = self._jobs.get(job_id)
        if record is None or record.terminal:
            return False
        if record.committing:
            logger.info(f"Job {job_id} is saving its decision; cancellation refused")
            return False
        entry = record.transition(JobState.CANCELLED, detail="Cancelled by caller")
        self.correlator.release(job_id)
        if record.task is not None:
            record.task.cancel()
        await self.store.append_audit(entry)
        logger.info(f"Job {job_id} cancelled")
        return True

    def reload_rules(self, path: str) -> RuleTables:
        """Swap in rule tables from a JSON file. Running jobs keep their snapshot."""
        return self.rules.reload(path)

    async def aclose(self) -> None:
        """Cancel running jobs and release collaborators."""
        for job_id in [job_id for job_id, r in self._jobs.items() if not r.terminal]:
            await self.cancel_job(job_id)
        tasks = [r.task for r in self._jobs.values() if r.task is not None and not r.task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.extraction.collaborator.aclose()
        await self.store.aclose()

    # Job lifecycle

    async def _advance(
        self,
        record: JobRecord,
        target: JobState,
        *,
        stage: StageName | None = None,
        detail: str | None = None,
    ) -> AuditEntry:
        entry = record.transition(target, stage=stage, detail=detail)
        logger.info(f"Job {record.job_id} -> {target}")
        await self.store.append_audit(entry)
        return entry

    async def _note(
        self,
        record: JobRecord,
        event: str,
        *,
        stage: StageName | None = None,
        detail: str | None = None,
    ) -> None:
        await self.store.append_audit(record.record(event, stage=stage, detail=detail))

    async def _run(self, record: JobRecord) -> None:
        job = record.job
        tables = self.rules.current()
        try:
            async with self._slots:
                await self._advance(record, JobState.EXTRACTING, detail=f"rules {tables.version}")
                extracted = await self._extract(record)
                if extracted is None:
                    return
                draft = extracted.value
                results: dict[StageName, StageResult | None] = {StageName.EXTRACTION: extracted}
                await self._advance(record, JobState.ANALYZING)
                results.update(await self._analyze(record, draft, tables))

            payment = None
            if job.requires_reconciliation:
                await self._advance(record, JobState.WAITING_PAYMENT)
                payment = await self._await_payment(record, draft)

            async with self._slots:
                results[StageName.RECONCILIATION] = await self._reconcile(
                    record, draft, tables, payment
                )
                await self._advance(record, JobState.AGGREGATING)
                results = await self._attach_narratives(record.job_id, results)
                await self._commit(record, results, tables)
        except asyncio.CancelledError:
            if not record.terminal:
                await self.store.append_audit(
                    record.transition(JobState.CANCELLED, detail="Task cancelled")
                )
            self.correlator.release(record.job_id)
            logger.info(f"Job {record.job_id} stopped after cancellation")
            raise
        except Exception as e:
            logger.exception(f"Job {record.job_id} failed with error: {e}")
            await self._fail(record, e)

    async def _extract(self, record: JobRecord) -> StageResult | None:
        started = time.perf_counter()
        try:
            draft, confidence = await self.extraction.extract(record.job)
        except ExtractionFailure as e:
            stage_results_total.labels(stage=StageName.EXTRACTION, status=StageStatus.FAILED).inc()
            logger.warning(f"Job {record.job_id}: extraction failed: {e}")
            await self._reject_extraction(record, e)
            return None
        elapsed = time.perf_counter() - started
        stage_duration_seconds.labels(stage=StageName.EXTRACTION).observe(elapsed)
        stage_results_total.labels(stage=StageName.EXTRACTION, status=StageStatus.SUCCESS).inc()
        result = StageResult.success(StageName.EXTRACTION, draft, confidence).model_copy(
            update={"duration_ms": round(elapsed * 1000, 3)}
        )
        await self._note(
            record,
            "STAGE_COMPLETED",
            stage=StageName.EXTRACTION,
            detail=f"{result.status} confidence {confidence:.0f}",
        )
        return result

    async def _reject_extraction(self, record: JobRecord, error: ExtractionFailure) -> None:
        entry = record.prepare(JobState.FAILED, stage=StageName.EXTRACTION, detail=str(error))
        decision = Decision(
            job_id=record.job_id,
            version=record.version,
            status=DecisionStatus.REJECTED,
            reason_code=error.code,
            flags=(error.code,),
            stage_results={StageName.EXTRACTION: None},
            overall_confidence=0.0,
            audit_log=(*record.audit, entry),
        )
        await self._finalize(record, entry, decision)

    async def _analyze(
        self, record: JobRecord, draft: InvoiceDraft, tables: RuleTables
    ) -> dict[StageName, StageResult]:
        ctx = StageContext(job_id=record.job_id, draft=draft, tables=tables)
        market_task = asyncio.create_task(self._run_stage(StageName.MARKET, ctx))
        compliance_task = asyncio.create_task(self._run_stage(StageName.COMPLIANCE, ctx))
        fraud_task = asyncio.create_task(self._run_fraud(ctx, market_task))
        tasks = (compliance_task, market_task, fraud_task)
        try:
            compliance, market, fraud = await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        for result in (compliance, market, fraud):
            await self._note(
                record,
                "STAGE_COMPLETED",
                stage=result.stage,
                detail=f"{result.status}" + (f": {result.reason}" if result.reason else ""),
            )
        return {
            StageName.COMPLIANCE: compliance,
            StageName.FRAUD: fraud,
            StageName.MARKET: market,
        }

    async def _run_stage(
        self, name: StageName, ctx: StageContext, started: float | None = None
    ) -> StageResult:
        """Run a stage under its timeout, falling back to its deterministic result.

        ``started`` is the ``perf_counter`` time the stage budget began; time
        already spent waiting on an upstream stage counts against the timeout.
        """
        stage = self.stages[name]
        timeout = self.timeouts[name]
        if started is None:
            started = time.perf_counter()
        remaining = max(0.0, timeout - (time.perf_counter() - started))
        try:
            value, confidence = await asyncio.wait_for(stage.run(ctx), timeout=remaining)
            result = StageResult.success(name, value, confidence)
        except TimeoutError:
            error = StageTimeout(name, timeout)
            logger.warning(f"Job {ctx.job_id}: {error}; using fallback")
            result = self._fallback(stage, ctx, error.code)
        except Exception as e:
            logger.warning(f"Job {ctx.job_id}: stage '{name}' failed ({e}); using fallback")
            result = self._fallback(stage, ctx, f"{type(e).__name__}: {e}")

        elapsed = time.perf_counter() - started
        stage_duration_seconds.labels(stage=name).observe(elapsed)
        stage_results_total.labels(stage=name, status=result.status).inc()
        return result.model_copy(update={"duration_ms": round(elapsed * 1000, 3)})

    def _fallback(self, stage: AnalysisStage, ctx: StageContext, reason: str) -> StageResult:
        try:
            value, confidence = stage.fallback(ctx)
        except Exception as e:
            logger.error(f"Job {ctx.job_id}: fallback for '{stage.name}' failed: {e}")
            return StageResult.failed(stage.name, f"{reason}; fallback failed: {e}")
        return StageResult.degraded(stage.name, value, confidence, reason)

    async def _run_fraud(
        self, ctx: StageContext, market_task: "asyncio.Task[StageResult]"
    ) -> StageResult:
        """Score fraud with the market verdict.

        Waiting for the market verdict and scoring share one fraud timeout.
        When no market verdict is ready within it, or the market stage produced
        none, fraud is scored by its fallback without market data and recorded
        DEGRADED with MARKET_UNAVAILABLE.
        """
        started = time.perf_counter()
        market: StageResult | None
        try:
            market = await asyncio.wait_for(
                asyncio.shield(market_task), timeout=self.timeouts[StageName.FRAUD]
            )
        except TimeoutError:
            market = None

        if market is None or not market.executed:
            logger.warning(f"Job {ctx.job_id}: market verdict unavailable; scoring without it")
            result = self._fallback(self.stages[StageName.FRAUD], ctx, MARKET_UNAVAILABLE)
            elapsed = time.perf_counter() - started
            stage_duration_seconds.labels(stage=StageName.FRAUD).observe(elapsed)
            stage_results_total.labels(stage=StageName.FRAUD, status=result.status).inc()
            return result.model_copy(update={"duration_ms": round(elapsed * 1000, 3)})

        return await self._run_stage(
            StageName.FRAUD, replace(ctx, market=market.value), started=started
        )

    async def _await_payment(self, record: JobRecord, draft: InvoiceDraft) -> Payment | None:
        """Park until a correlated payment arrives or the deadline passes."""
        reference = record.job.expected_payment_reference or draft.invoice_number
        future = self.correlator.park(record.job_id, reference)
        try:
            payment = await asyncio.wait_for(
                future, timeout=self.settings.reconciliation_timeout_seconds
            )
        except TimeoutError:
            error = ReconciliationTimeout(
                f"No payment for reference '{reference}' within "
                f"{self.settings.reconciliation_timeout_seconds:g}s"
            )
            logger.warning(f"Job {record.job_id}: {error}")
            await self._note(
                record, error.code, stage=StageName.RECONCILIATION, detail=str(error)
            )
            return None
        finally:
            self.correlator.release(record.job_id)

        await self._note(
            record,
            "PAYMENT_CORRELATED",
            stage=StageName.RECONCILIATION,
            detail=f"payment {payment.payment_id}",
        )
        return payment

    async def _reconcile(
        self,
        record: JobRecord,
        draft: InvoiceDraft,
        tables: RuleTables,
        payment: Payment | None,
    ) -> StageResult:
        if not record.job.requires_reconciliation:
            return StageResult.skipped(StageName.RECONCILIATION, NOT_REQUIRED)
        if payment is None:
            return StageResult.skipped(StageName.RECONCILIATION, ReconciliationTimeout.code)

        ctx = StageContext(job_id=record.job_id, draft=draft, tables=tables, payment=payment)
        result = await self._run_stage(StageName.RECONCILIATION, ctx)
        await self._note(
            record, "STAGE_COMPLETED", stage=StageName.RECONCILIATION, detail=f"{result.status}"
        )
        return result

    def _summarize(self, result: StageResult) -> str:
        if result.stage is StageName.EXTRACTION:
            draft: InvoiceDraft = result.value  # type: ignore[assignment]
            return (
                f"Invoice {draft.invoice_number or '(no number)'} from "
                f"{draft.country or '(unknown country)'}: total {draft.effective_total} "
                f"{draft.currency}, extraction confidence {result.confidence:.0f}"
            )
        return self.stages[result.stage].describe(result.value)

    async def _attach_narratives(
        self, job_id: str, results: dict[StageName, StageResult | None]
    ) -> dict[StageName, StageResult | None]:
        """Attach reasoning text to executed stages. Failures leave results unchanged."""

        async def narrate(result: StageResult | None) -> StageResult | None:
            if result is None or not result.executed:
                return result
            try:
                text = await asyncio.wait_for(
                    self.narrative.narrate(result.stage, self._summarize(result)),
                    timeout=self.settings.narrative_timeout_seconds,
                )
            except Exception as e:
                logger.warning(f"Job {job_id}: narrative for '{result.stage}' unavailable: {e}")
                return result
            return result.model_copy(update={"narrative": text}) if text else result

        narrated = await asyncio.gather(*(narrate(r) for r in results.values()))
        return dict(zip(results.keys(), narrated, strict=True))

    async def _commit(
        self,
        record: JobRecord,
        results: dict[StageName, StageResult | None],
        tables: RuleTables,
    ) -> None:
        outcome = decide(results, tables.fraud, record.job.requires_reconciliation)
        entry = record.prepare(JobState.DONE, detail=f"{outcome.status}")
        decision = Decision(
            job_id=record.job_id,
            version=record.version,
            status=outcome.status,
            reason_code=outcome.reason_code,
            flags=outcome.flags,
            stage_results=results,
            overall_confidence=overall_confidence(
                results, self.settings.degraded_confidence_factor
            ),
            audit_log=(*record.audit, entry),
        )
        await self._finalize(record, entry, decision)
        logger.info(
            f"Job {record.job_id} -> {JobState.DONE}: {decision.status} "
            f"(confidence {decision.overall_confidence}, reason {decision.reason_code})"
        )

    async def _finalize(self, record: JobRecord, entry: AuditEntry, decision: Decision) -> None:
        """Save a terminal decision, then apply the transition it records.

        The job stays in its current state until the store has the decision,
        and cannot be cancelled while the save is in flight.

        Raises:
            DecisionNotPersisted: If the store rejects or fails the save
        """
        record.committing = True
        try:
            await self.store.save_decision(decision)
        except Exception as e:
            raise DecisionNotPersisted(
                f"Decision v{decision.version} for job {record.job_id} not saved: {e}"
            ) from e
        finally:
            record.committing = False
        record.apply(entry)
        record.decision = decision
        await self.store.append_audit(entry)
        decisions_total.labels(status=decision.status).inc()
        if entry.state is JobState.FAILED:
            logger.info(f"Job {record.job_id} -> {JobState.FAILED}: {decision.status}")

    async def _fail(self, record: JobRecord, error: Exception) -> None:
        """Record an unexpected error as FAILED with a decision needing review.

        When the store itself is failing the decision is kept in memory only,
        so callers of this process still see NEEDS_REVIEW and never a decision
        that was not persisted.
        """
        if record.terminal:
            return
        code = error.code if isinstance(error, PipelineError) else INTERNAL_ERROR
        entry = record.transition(JobState.FAILED, detail=str(error))
        decision = Decision(
            job_id=record.job_id,
            version=record.version,
            status=DecisionStatus.NEEDS_REVIEW,
            reason_code=code,
            flags=(code,),
            stage_results={},
            overall_confidence=0.0,
            audit_log=tuple(record.audit),
        )
        record.decision = decision
        decisions_total.labels(status=decision.status).inc()
        try:
            await self.store.append_audit(entry)
            await self.store.save_decision(decision)
        except Exception as e:
            logger.error(f"Job {record.job_id}: failure decision not persisted: {e}")


def create_orchestrator(settings: Settings | None = None) -> Orchestrator:
    """Build an orchestrator and its collaborators from settings.

    Args:
        settings: Application settings (defaults to environment)

    Returns:
        Configured Orchestrator
    """
    settings = settings or get_settings()
    catalog = (
        ReferenceCatalog.from_json_file(settings.reference_catalog_path)
        if settings.reference_catalog_path
        else DEFAULT_CATALOG
    )
    collaborator = create_extraction_collaborator(settings)
    return Orchestrator(
        settings,
        extraction=ExtractionStage(collaborator, settings.extraction_timeout_seconds),
        store=create_decision_store(settings),
        rules=create_rule_table_store(settings),
        catalog=catalog,
        narrative=create_narrative_provider(settings),
    )
