"""Generative narrative collaborators.

A narrative is human-readable reasoning attached to a stage result for audit
and UX. It is cosmetic: the orchestrator swallows narrative failures and a
narrative never changes a status or a score.
"""

import logging
from abc import ABC, abstractmethod

from services.shared.config import Settings
from services.shared.schema import StageName

logger = logging.getLogger(__name__)


class NarrativeProvider(ABC):
    """Interface for narrative backends."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @abstractmethod
    async def narrate(self, stage: StageName, summary: str) -> str | None:
        """Return reasoning text for a stage result summary.

        Raises:
            CollaboratorUnavailable: If the backend cannot be reached
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier for logging."""


class NullNarrativeProvider(NarrativeProvider):
    """No narratives."""

    async def narrate(self, stage: StageName, summary: str) -> str | None:
        return None

    @property
    def provider_name(self) -> str:
        return "none"


def create_narrative_provider(settings: Settings) -> NarrativeProvider:
    """Instantiate the provider named by ``settings.narrative_provider``."""
    if settings.narrative_provider == "openai":
        from services.narrative.openai_provider import OpenAINarrativeProvider

        provider: NarrativeProvider = OpenAINarrativeProvider(settings)
    else:
        provider = NullNarrativeProvider(settings)
    logger.info(f"Created narrative provider: {provider.provider_name}")
    return provider
