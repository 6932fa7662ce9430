"""OpenAI-based narrative provider.

Turns a stage result summary into two or three sentences of reasoning for
reviewers. Requires the OPENAI_API_KEY environment variable.

Includes retry logic with exponential backoff for transient API errors.
"""

import logging
import os
from typing import Any

from openai import AsyncOpenAI, OpenAIError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.narrative.base import NarrativeProvider
from services.shared.config import Settings
from services.shared.errors import CollaboratorUnavailable
from services.shared.schema import StageName

logger = logging.getLogger(__name__)

_STAGE_ROLES = {
    StageName.EXTRACTION: "document extraction",
    StageName.COMPLIANCE: "tax compliance",
    StageName.FRAUD: "fraud screening",
    StageName.MARKET: "market price analysis",
    StageName.RECONCILIATION: "payment reconciliation",
}


class OpenAINarrativeProvider(NarrativeProvider):
    """Narratives from an OpenAI chat model."""

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
        super().__init__(settings)
        self._client = client
        self._model = settings.openai_model

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        return self._client is not None or os.getenv("OPENAI_API_KEY") is not None

    async def narrate(self, stage: StageName, summary: str) -> str | None:
        """Ask the model to explain a stage result.

        Raises:
            CollaboratorUnavailable: Missing API key or API failure after retries
        """
        if not self.is_available():
            raise CollaboratorUnavailable(self.provider_name, "OPENAI_API_KEY not set")
        if self._client is None:
            self._client = AsyncOpenAI(api_key=os.getenv("OPENAI_API_KEY"))

        try:
            response = await self._call_openai_with_retry(stage, summary)
        except OpenAIError as e:
            raise CollaboratorUnavailable(self.provider_name, str(e)) from e

        content: str | None = response.choices[0].message.content
        return content.strip() if content else None

    @retry(
        retry=retry_if_exception_type(OpenAIError),
        wait=wait_exponential_jitter(initial=1, max=20),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _call_openai_with_retry(self, stage: StageName, summary: str) -> Any:
        if self._client is None:
            raise RuntimeError("OpenAI client not initialized")

        return await self._client.chat.completions.create(
            model=self._model,
            messages=[
                {
                    "role": "system",
                    "content": (
                        f"You are an accounts-receivable analyst explaining the result of "
                        f"an automated {_STAGE_ROLES[stage]} check to a human reviewer. "
                        "Answer in at most three sentences. Do not invent numbers."
                    ),
                },
                {"role": "user", "content": summary},
            ],
            temperature=0,
            max_tokens=200,
        )
