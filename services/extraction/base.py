"""Abstract base class for OCR/extraction collaborators.

Enables switching between extraction backends (remote OCR service, self-hosted
LLM) behind one narrow contract: document bytes in, raw field map and a 0-100
confidence out.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from services.shared.config import Settings


class CollaboratorResponse(BaseModel):
    """Raw output of an extraction collaborator.

    Attributes:
        fields: Field name to value, or to ``{"value": ..., "confidence": ...}``
        confidence: Overall confidence reported by the backend (0-100, unclamped)
        provider: Name of the collaborator that produced the response
    """

    fields: dict[str, Any]
    confidence: float
    provider: str
    raw: dict[str, Any] = Field(default_factory=dict)


class ExtractionCollaborator(ABC):
    """Interface for document extraction backends.

    Implementations raise ``CollaboratorUnavailable`` when the backend cannot
    be reached and ``ExtractionFailure`` when it answers with something that
    is not a field map.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize collaborator with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    async def extract(self, content: bytes, mime_type: str | None) -> CollaboratorResponse:
        """Extract raw invoice fields from a document.

        Args:
            content: Document bytes
            mime_type: Document MIME type, if known

        Returns:
            CollaboratorResponse with fields and confidence
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this collaborator is configured and reachable."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier for logging/metrics."""

    async def aclose(self) -> None:
        """Release network resources held by the collaborator."""
        return None
