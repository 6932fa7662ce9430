"""Matching of an invoice against an incoming payment."""

import logging
import math
from decimal import Decimal

from services.rules.tables import ReconciliationPolicy
from services.shared.money import quantize
from services.shared.schema import (
    InvoiceDraft,
    MatchType,
    Payment,
    ReconciliationMatch,
    StageName,
)
from services.shared.stage import AnalysisStage, StageContext

logger = logging.getLogger(__name__)

CURRENCY_MISMATCH_CONFIDENCE = 20


def normalize_reference(reference: str | None) -> str | None:
    """Canonical form used to correlate payment references with invoice numbers."""
    if not reference:
        return None
    return "".join(ch for ch in reference.upper() if ch.isalnum()) or None


def _unclear_suggestions(draft: InvoiceDraft, payment: Payment, total: Decimal | None) -> list[str]:
    suggestions = []
    if normalize_reference(payment.reference) != normalize_reference(draft.invoice_number):
        suggestions.append(
            f"Verify the payment reference '{payment.reference or ''}' against invoice "
            f"'{draft.invoice_number or ''}'"
        )
    else:
        suggestions.append("Verify the payment reference with the payer")
    if total is not None and payment.amount < total:
        suggestions.append(
            f"Check for a partial payment: {total - payment.amount} {draft.currency} outstanding"
        )
    elif total is not None and payment.amount > total:
        suggestions.append("Check for an overpayment or a payment covering several invoices")
    suggestions.append(
        f"Check for a currency mismatch (invoice {draft.currency}, payment {payment.currency})"
    )
    return suggestions


def reconcile(
    draft: InvoiceDraft, payment: Payment, policy: ReconciliationPolicy | None = None
) -> ReconciliationMatch:
    """Match a payment to an invoice.

    - difference 0: EXACT, matched, confidence 100
    - difference within ``policy.tolerance``: PARTIAL, matched, confidence
      lowered by the relative difference (at most 99)
    - otherwise, or on a currency mismatch: UNCLEAR, not matched, confidence
      at most 50, with suggestions

    Pure function of its inputs.
    """
    policy = policy or ReconciliationPolicy()
    total = draft.effective_total

    if total is None:
        return ReconciliationMatch(
            matched=False,
            match_type=MatchType.UNCLEAR,
            difference=quantize(payment.amount, payment.currency),
            confidence=0,
            suggestions=tuple(_unclear_suggestions(draft, payment, None)),
        )

    difference = quantize(abs(total - payment.amount), draft.currency)

    if payment.currency.upper() != draft.currency.upper():
        return ReconciliationMatch(
            matched=False,
            match_type=MatchType.UNCLEAR,
            difference=difference,
            confidence=CURRENCY_MISMATCH_CONFIDENCE,
            suggestions=tuple(_unclear_suggestions(draft, payment, total)),
        )

    if difference == 0:
        return ReconciliationMatch(
            matched=True, match_type=MatchType.EXACT, difference=difference, confidence=100
        )

    relative = difference / total if total else Decimal("1")

    if difference <= policy.tolerance:
        confidence = max(51, min(99, math.floor(100 * (1 - relative))))
        return ReconciliationMatch(
            matched=True,
            match_type=MatchType.PARTIAL,
            difference=difference,
            confidence=confidence,
            suggestions=(
                f"Difference of {difference} {draft.currency} is within tolerance; "
                "book it as bank fees",
            ),
        )

    confidence = max(0, min(50, math.floor(50 * (1 - relative))))
    return ReconciliationMatch(
        matched=False,
        match_type=MatchType.UNCLEAR,
        difference=difference,
        confidence=confidence,
        suggestions=tuple(_unclear_suggestions(draft, payment, total)),
    )


class ReconciliationStage(AnalysisStage):
    """Payment reconciliation as a pipeline stage. Requires ``ctx.payment``."""

    name = StageName.RECONCILIATION

    def compute(self, ctx: StageContext) -> tuple[ReconciliationMatch, float]:
        if ctx.payment is None:
            raise ValueError("Reconciliation requires a payment")
        match = reconcile(ctx.draft, ctx.payment, ctx.tables.reconciliation)
        logger.info(
            f"Job {ctx.job_id}: payment {ctx.payment.payment_id} "
            f"{match.match_type} (difference {match.difference})"
        )
        return match, float(match.confidence)

    def describe(self, value: ReconciliationMatch) -> str:  # type: ignore[override]
        return (
            f"{value.match_type} match, difference {value.difference}, "
            f"suggestions: {list(value.suggestions)}"
        )
