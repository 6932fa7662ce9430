"""Factory for creating extraction collaborators based on configuration.

Implements Factory Pattern for collaborator selection with a registry for
extensibility.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22
"""

import logging

from services.extraction.base import ExtractionCollaborator
from services.extraction.http_collaborator import HttpExtractionCollaborator
from services.extraction.ollama_collaborator import OllamaExtractionCollaborator
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class CollaboratorRegistry:
    """Registry of available extraction collaborators.

    Maps provider names to implementation classes. Supports runtime
    registration of new collaborators.
    """

    _collaborators: dict[str, type[ExtractionCollaborator]] = {
        "http": HttpExtractionCollaborator,
        "ollama": OllamaExtractionCollaborator,
    }

    @classmethod
    def register(cls, name: str, collaborator_class: type[ExtractionCollaborator]) -> None:
        """Register a new collaborator.

        Args:
            name: Provider identifier (must match Settings.extraction_provider)
            collaborator_class: Class implementing ExtractionCollaborator
        """
        cls._collaborators[name] = collaborator_class
        logger.info(f"Registered extraction collaborator: {name}")

    @classmethod
    def get_collaborator_class(cls, name: str) -> type[ExtractionCollaborator]:
        """Get collaborator class by name.

        Raises:
            ValueError: If the name is not registered
        """
        if name not in cls._collaborators:
            available = ", ".join(cls._collaborators.keys())
            raise ValueError(
                f"Unknown extraction provider: '{name}'. " f"Available providers: {available}"
            )
        return cls._collaborators[name]

    @classmethod
    def list_collaborators(cls) -> list[str]:
        return list(cls._collaborators.keys())


def create_extraction_collaborator(settings: Settings) -> ExtractionCollaborator:
    """Instantiate the collaborator named by ``settings.extraction_provider``.

    Logs a warning if the collaborator is not fully configured.

    Raises:
        ValueError: If configured provider is unknown
    """
    provider_name = settings.extraction_provider
    collaborator_class = CollaboratorRegistry.get_collaborator_class(provider_name)
    collaborator = collaborator_class(settings)

    if not collaborator.is_available():
        logger.warning(
            f"Extraction provider '{provider_name}' is not fully available. "
            f"Check configuration (e.g., service URL, model name)."
        )

    logger.info(f"Created extraction provider: {provider_name}")
    return collaborator
