"""Contract shared by the analysis stages.

Every analysis stage has a deterministic ``compute`` over the draft and the
rule-table snapshot. ``run`` is the primary path and may consult a remote
backend; ``fallback`` is what the orchestrator uses when ``run`` fails or
times out. By default both are ``compute``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from services.rules.tables import RuleTables
from services.shared.schema import InvoiceDraft, MarketVerdict, Payment, StageName, StageValue


@dataclass(frozen=True)
class StageContext:
    """Inputs visible to an analysis stage for one job."""

    job_id: str
    draft: InvoiceDraft
    tables: RuleTables
    market: MarketVerdict | None = None
    payment: Payment | None = None


class AnalysisStage(ABC):
    """Base class for compliance, fraud, market and reconciliation stages."""

    name: StageName

    @abstractmethod
    def compute(self, ctx: StageContext) -> tuple[StageValue, float]:
        """Deterministic result and its confidence (0-100)."""

    async def run(self, ctx: StageContext) -> tuple[StageValue, float]:
        """Primary path. Subclasses backed by a remote service override this."""
        return self.compute(ctx)

    def fallback(self, ctx: StageContext) -> tuple[StageValue, float]:
        """Deterministic result used after ``run`` failed or timed out."""
        return self.compute(ctx)

    def describe(self, value: Any) -> str:
        """Short plain-text summary handed to the narrative collaborator."""
        return str(value)
