"""Ollama-based extraction collaborator for self-hosted LLM inference.

Reads text documents (already OCR'd text, e-mail bodies, plain-text invoices)
and asks a local Ollama model to return the invoice fields as JSON.

Requires Ollama server running on the configured base URL.
See: https://ollama.ai/
"""

import json
import logging
import re
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

# Reported when the model does not include its own confidence
DEFAULT_MODEL_CONFIDENCE = 70.0

_TEXT_MIME_PREFIXES = ("text/", "application/json")


class OllamaExtractionCollaborator(ExtractionCollaborator):
    """Field extraction from text documents through an Ollama model."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings)
        self._base_url = settings.ollama_base_url
        self._model = settings.ollama_model
        self._client = client or httpx.AsyncClient(timeout=120.0)  # LLMs can be slow

    @property
    def provider_name(self) -> str:
        return "ollama"

    def is_available(self) -> bool:
        return bool(self._base_url and self._model)

    async def extract(self, content: bytes, mime_type: str | None) -> CollaboratorResponse:
        """Extract invoice fields from a text document.

        Raises:
            ExtractionFailure: Non-text document, empty text or unparseable model output
            CollaboratorUnavailable: Ollama server unreachable
        """
        if mime_type and not mime_type.startswith(_TEXT_MIME_PREFIXES):
            raise ExtractionFailure(f"Ollama collaborator cannot read '{mime_type}' documents")
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ExtractionFailure("Document is not UTF-8 text") from e
        if not text.strip():
            raise ExtractionFailure("Empty document text provided")

        try:
            response_text = await self._call_ollama_with_retry(self._build_prompt(text))
        except (httpx.HTTPError, httpx.TimeoutException) as e:
            logger.warning(f"Ollama call failed: {e}")
            raise CollaboratorUnavailable(self.provider_name, str(e)) from e

        try:
            parsed = self._parse_json_response(response_text)
        except json.JSONDecodeError as e:
            raise ExtractionFailure(f"JSON parsing failed: {e}") from e
        if not isinstance(parsed, dict):
            raise ExtractionFailure("Model output is not a JSON object")

        confidence = parsed.pop("confidence", DEFAULT_MODEL_CONFIDENCE)
        if isinstance(confidence, bool) or not isinstance(confidence, int | float):
            confidence = DEFAULT_MODEL_CONFIDENCE
        elif confidence <= 1:
            # Some models answer on a 0-1 scale
            confidence = confidence * 100

        return CollaboratorResponse(
            fields=parsed,
            confidence=float(confidence),
            provider=self.provider_name,
        )

    @retry(
        retry=retry_if_exception_type((httpx.HTTPError, httpx.TimeoutException)),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _call_ollama_with_retry(self, prompt: str) -> str:
        response = await self._client.post(
            f"{self._base_url}/api/generate",
            json={
                "model": self._model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": 0,  # Deterministic output
                    "num_predict": 1024,
                },
            },
        )
        response.raise_for_status()
        result: str = response.json().get("response", "")
        return result

    @staticmethod
    def _parse_json_response(response_text: str) -> Any:
        """Extract JSON from an LLM response, tolerating markdown code fences."""
        json_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", response_text)
        if json_match:
            return json.loads(json_match.group(1).strip())

        json_match = re.search(r"\{[\s\S]*\}", response_text)
        if json_match:
            return json.loads(json_match.group(0))

        return json.loads(response_text.strip())

    @staticmethod
    def _build_prompt(text: str) -> str:
        return f"""Extract invoice information from the document text below.
Return ONLY a JSON object with these keys (use null when a field is absent):
invoice_number, issue_date (YYYY-MM-DD), country (ISO 3166 alpha-2),
customer_name, buyer_tax_id, seller_tax_id, currency (ISO 4217),
subtotal, tax_amount, total,
line_items (list of objects with description, quantity, unit_price, amount),
confidence (0-100, how sure you are about the extraction).

Rules:
- Amounts are plain numbers without currency symbols or thousands separators
- European decimals: "211,77" -> 211.77
- "Net worth" is the subtotal, "Gross worth" is the total

Document:
{text}

JSON:"""

    async def aclose(self) -> None:
        await self._client.aclose()
