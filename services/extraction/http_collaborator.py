"""Remote OCR service collaborator.

Posts the document to an HTTP extraction endpoint that answers with
``{"fields": {...}, "confidence": 0..100}``.

Includes retry logic with exponential backoff for transient transport errors.
"""

import logging
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.extraction.base import CollaboratorResponse, ExtractionCollaborator
from services.shared.config import Settings
from services.shared.errors import CollaboratorUnavailable, ExtractionFailure

logger = logging.getLogger(__name__)


class HttpExtractionCollaborator(ExtractionCollaborator):
    """Extraction backed by a remote OCR/extraction HTTP service."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        """Initialize HTTP collaborator.

        Args:
            settings: Application settings with ``ocr_service_url``
            client: Optional pre-configured async client (tests)
        """
        super().__init__(settings)
        self._url = settings.ocr_service_url
        self._client = client or httpx.AsyncClient(timeout=settings.extraction_timeout_seconds)

    @property
    def provider_name(self) -> str:
        return "http"

    def is_available(self) -> bool:
        return bool(self._url)

    async def extract(self, content: bytes, mime_type: str | None) -> CollaboratorResponse:
        """Send the document to the OCR service.

        Raises:
            CollaboratorUnavailable: Service unreachable or answering with an error status
            ExtractionFailure: Response body is not the expected JSON shape
        """
        if not content:
            raise ExtractionFailure("Empty document provided")

        try:
            body = await self._post_with_retry(content, mime_type or "application/octet-stream")
        except (httpx.HTTPError, httpx.TimeoutException) as e:
            logger.warning(f"OCR service call failed: {e}")
            raise CollaboratorUnavailable(self.provider_name, str(e)) from e

        return self._parse_body(body)

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, httpx.TimeoutException)),
        wait=wait_exponential_jitter(initial=1, max=10),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _post_with_retry(self, content: bytes, mime_type: str) -> Any:
        """POST the document, retrying transport errors.

        HTTP error statuses are not retried; they surface as ``HTTPStatusError``.
        """
        response = await self._client.post(
            self._url,
            files={"file": ("document", content, mime_type)},
        )
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as e:
            raise ExtractionFailure(f"OCR service returned non-JSON body: {e}") from e

    def _parse_body(self, body: Any) -> CollaboratorResponse:
        if not isinstance(body, dict):
            raise ExtractionFailure("OCR service response is not a JSON object")
        fields = body.get("fields")
        if not isinstance(fields, dict):
            raise ExtractionFailure("OCR service response has no 'fields' object")
        confidence = body.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, int | float):
            raise ExtractionFailure("OCR service response has no numeric 'confidence'")
        return CollaboratorResponse(
            fields=fields,
            confidence=float(confidence),
            provider=self.provider_name,
            raw=body,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
