"""Async task definitions for the decision pipeline.

Uses arq (async Redis queue) for background task processing. Jobs and
payments enqueued by the ingestion side are handed to one Orchestrator that
lives for the lifetime of the worker, so parked jobs and buffered payments
survive between tasks.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from services.orchestrator.orchestrator import Orchestrator, create_orchestrator
from services.orchestrator.state import JobLookup
from services.shared.config import Settings, get_settings
from services.shared.errors import JobValidationError
from services.shared.schema import Decision, JobRequest, Payment

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Share of the arq job timeout spent waiting for a decision before returning
WAIT_FRACTION = 0.9


def _result(job_id: str, outcome: Decision | JobLookup) -> dict[str, Any]:
    if isinstance(outcome, Decision):
        return {
            "job_id": job_id,
            "status": outcome.status,
            "decision": outcome.model_dump(mode="json"),
        }
    return {"job_id": job_id, "status": outcome, "decision": None}


def _parse(model: type[ModelT], data: Any, what: str) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise JobValidationError(f"Malformed {what}: {e.error_count()} validation error(s)") from e


async def process_job(
    ctx: dict[str, Any], job_data: dict[str, Any], reprocess: bool = False
) -> dict[str, Any]:
    """Submit a job to the orchestrator and wait for its decision.

    Jobs that wait for a payment longer than the task budget keep running in
    the worker; the task then reports PENDING and the decision can be read
    later with ``get_decision``.

    Args:
        ctx: arq context (contains the orchestrator)
        job_data: Serialized JobRequest
        reprocess: Recompute a job that already has a decision

    Returns:
        Dict with job_id, status and the decision when available
    """
    orchestrator: Orchestrator = ctx["orchestrator"]
    settings: Settings = ctx.get("settings", get_settings())

    try:
        job = _parse(JobRequest, job_data, "job request")
        job_id = await orchestrator.submit_job(job, reprocess=reprocess)
    except JobValidationError as e:
        logger.warning(f"Rejected job submission: {e}")
        return {
            "job_id": job_data.get("job_id") if isinstance(job_data, dict) else None,
            "status": e.code,
            "error": str(e),
            "decision": None,
        }

    logger.info(f"Processing job {job_id}")
    outcome = await orchestrator.wait_for(
        job_id, timeout=settings.queue_job_timeout * WAIT_FRACTION
    )
    result = _result(job_id, outcome)
    logger.info(f"Job {job_id} task finished with status: {result['status']}")
    return result


async def notify_payment(ctx: dict[str, Any], payment_data: dict[str, Any]) -> dict[str, Any]:
    """Deliver a payment to the orchestrator for correlation."""
    orchestrator: Orchestrator = ctx["orchestrator"]
    try:
        payment = _parse(Payment, payment_data, "payment")
    except JobValidationError as e:
        logger.warning(f"Rejected payment notification: {e}")
        payment_id = payment_data.get("payment_id") if isinstance(payment_data, dict) else None
        return {
            "payment_id": payment_id,
            "status": e.code,
            "error": str(e),
            "correlated": False,
        }
    correlated = await orchestrator.notify_payment(payment)
    return {"payment_id": payment.payment_id, "correlated": correlated}


async def get_decision(ctx: dict[str, Any], job_id: str) -> dict[str, Any]:
    """Read the latest decision or status for a job."""
    orchestrator: Orchestrator = ctx["orchestrator"]
    return _result(job_id, await orchestrator.get_decision(job_id))


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - build the orchestrator.

    Called once when worker starts so every task shares the same
    orchestrator, rule tables and collaborators.
    """
    logger.info("Initializing worker services...")
    settings = get_settings()
    ctx["settings"] = settings
    ctx["orchestrator"] = create_orchestrator(settings)
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - cancel running jobs and release resources."""
    logger.info("Worker shutting down...")
    orchestrator: Orchestrator | None = ctx.get("orchestrator")
    if orchestrator is not None:
        await orchestrator.aclose()


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions to register
    - Redis connection settings
    - Job timeout and concurrency
    """

    functions = [process_job, notify_payment, get_decision]
    on_startup = startup
    on_shutdown = shutdown

    # These will be set from environment
    redis_settings = None
    max_jobs = 10
    job_timeout = 300

    @classmethod
    def get_redis_settings(cls) -> Any:
        """Get Redis settings from configuration."""
        from arq.connections import RedisSettings as ArqRedisSettings

        settings = get_settings()
        return ArqRedisSettings.from_dsn(settings.redis_url)
