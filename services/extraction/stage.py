"""Extraction stage: JobRequest in, InvoiceDraft and confidence out.

Documents go through the configured OCR/extraction collaborator; webhooks are
normalized locally. Any failure is an ``ExtractionFailure``, which the
orchestrator treats as fatal to the job.
"""

import asyncio
import logging

from pydantic import ValidationError

from services.extraction.base import ExtractionCollaborator
from services.extraction.mapping import draft_from_fields
from services.extraction.webhook import draft_from_purchase, normalize_webhook
from services.shared.errors import CollaboratorUnavailable, ExtractionFailure, JobValidationError
from services.shared.schema import InvoiceDraft, JobKind, JobRequest

logger = logging.getLogger(__name__)


def clamp_confidence(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def validate_job_request(job: JobRequest) -> None:
    """Reject malformed requests before they are queued.

    Raises:
        JobValidationError: Empty job id, payload of the wrong type for the job
            kind, or a webhook without the required purchase fields
    """
    if not job.job_id or not job.job_id.strip():
        raise JobValidationError("job_id must not be empty")

    if job.kind is JobKind.DOCUMENT:
        if not isinstance(job.payload, bytes) or not job.payload:
            raise JobValidationError("DOCUMENT jobs require non-empty document bytes")
        return

    if not isinstance(job.payload, dict):
        raise JobValidationError("WEBHOOK jobs require a JSON object payload")
    try:
        purchase = normalize_webhook(job.payload)
    except ExtractionFailure as e:
        raise JobValidationError(str(e)) from e
    missing = purchase.missing_required()
    if missing:
        raise JobValidationError(f"Webhook missing required fields: {', '.join(missing)}")


class ExtractionStage:
    """Produces the InvoiceDraft every other stage depends on."""

    def __init__(self, collaborator: ExtractionCollaborator, timeout: float) -> None:
        """Initialize extraction stage.

        Args:
            collaborator: OCR/extraction backend used for DOCUMENT jobs
            timeout: Seconds allowed for one collaborator call (retries included)
        """
        self.collaborator = collaborator
        self.timeout = timeout

    async def extract(self, job: JobRequest) -> tuple[InvoiceDraft, float]:
        """Extract an InvoiceDraft from a job.

        Returns:
            Tuple of (draft, confidence in [0, 100])

        Raises:
            ExtractionFailure: On any failure to produce a draft
        """
        if job.kind is JobKind.WEBHOOK:
            return self._extract_webhook(job)
        return await self._extract_document(job)

    def _extract_webhook(self, job: JobRequest) -> tuple[InvoiceDraft, float]:
        if not isinstance(job.payload, dict):
            raise ExtractionFailure("Webhook payload is not a JSON object")
        purchase = normalize_webhook(job.payload)
        try:
            draft, confidence = draft_from_purchase(purchase)
        except ValidationError as e:
            raise ExtractionFailure(
                f"Webhook fields do not form an invoice: {e.error_count()} invalid field(s)"
            ) from e
        logger.info(f"Job {job.job_id}: webhook from {purchase.platform} extracted")
        return draft, clamp_confidence(confidence)

    async def _extract_document(self, job: JobRequest) -> tuple[InvoiceDraft, float]:
        if not isinstance(job.payload, bytes):
            raise ExtractionFailure("Document payload is not bytes")

        try:
            response = await asyncio.wait_for(
                self.collaborator.extract(job.payload, job.mime_type),
                timeout=self.timeout,
            )
        except TimeoutError as e:
            raise ExtractionFailure(
                f"{self.collaborator.provider_name} timed out after {self.timeout:g}s"
            ) from e
        except CollaboratorUnavailable as e:
            raise ExtractionFailure(str(e)) from e
        except ExtractionFailure:
            raise
        except Exception as e:
            raise ExtractionFailure(f"Extraction failed: {e}") from e

        confidence = clamp_confidence(response.confidence)
        try:
            draft = draft_from_fields(response.fields, confidence, source="document")
        except (ValidationError, ValueError, TypeError) as e:
            raise ExtractionFailure(
                f"Malformed response from {response.provider}: {e}"
            ) from e
        logger.info(
            f"Job {job.job_id}: document extracted by {response.provider} "
            f"(confidence {confidence:.0f})"
        )
        return draft, confidence
