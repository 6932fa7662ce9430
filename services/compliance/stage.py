"""Jurisdiction tax computation and compliance checks.

Applies a RuleTables snapshot to an InvoiceDraft. Amounts are Decimal and
every tax component is rounded half-up to the currency minor unit before
summing, so the computed tax is exact to one minor unit.
"""

import logging
from decimal import Decimal

from services.rules.tables import CrossBorderRule, Jurisdiction, RuleTables
from services.shared.money import quantize, within_tolerance
from services.shared.schema import (
    ComplianceVerdict,
    InvoiceDraft,
    StageName,
    TaxComponent,
    TransactionType,
)
from services.shared.stage import AnalysisStage, StageContext

logger = logging.getLogger(__name__)

REVERSE_CHARGE_NOTE = "ReverseCharge"


def _field_present(draft: InvoiceDraft, field: str) -> bool:
    if field in InvoiceDraft.model_fields:
        value = getattr(draft, field)
    else:
        value = draft.attributes.get(field)
    return value not in (None, "", ())


def _applies_reverse_charge(draft: InvoiceDraft, jurisdiction: Jurisdiction) -> bool:
    return (
        jurisdiction.cross_border_rule is CrossBorderRule.REVERSE_CHARGE
        and draft.transaction_type is TransactionType.B2B
        and jurisdiction.is_valid_tax_id(draft.buyer_tax_id)
    )


def compute_tax(
    subtotal: Decimal, jurisdiction: Jurisdiction, currency: str, reverse_charge: bool = False
) -> tuple[TaxComponent, ...]:
    """Tax breakdown for a subtotal; all components zero under reverse charge."""
    return tuple(
        TaxComponent(
            label=component.label,
            rate=component.rate,
            amount=quantize(
                Decimal("0") if reverse_charge else subtotal * component.rate, currency
            ),
        )
        for component in jurisdiction.components()
    )


def check(draft: InvoiceDraft, tables: RuleTables) -> ComplianceVerdict:
    """Compute tax and check required fields for the draft's jurisdiction.

    Args:
        draft: Extracted invoice
        tables: Rule-table snapshot

    Returns:
        ComplianceVerdict; compliant only when no required field is missing and
        the declared tax is within one minor unit of the computed tax
    """
    code = tables.resolve_country(draft.country)
    if code is None:
        return ComplianceVerdict(
            is_compliant=False,
            jurisdiction=None,
            missing_fields=("country",),
            warnings=("No country on invoice; jurisdiction cannot be determined",),
        )

    jurisdiction = tables.jurisdictions.get(code)
    if jurisdiction is None:
        return ComplianceVerdict(
            is_compliant=False,
            jurisdiction=code,
            warnings=(f"No rule table for jurisdiction '{code}' (tables {tables.version})",),
        )

    missing = [f for f in jurisdiction.required_fields if not _field_present(draft, f)]
    warnings: list[str] = []

    subtotal = draft.effective_subtotal
    if subtotal is None:
        missing.append("subtotal")
        return ComplianceVerdict(
            is_compliant=False,
            jurisdiction=code,
            missing_fields=tuple(missing),
            warnings=("Subtotal unavailable; tax cannot be computed",),
            invoice_format_name=jurisdiction.invoice_format_name,
        )

    reverse_charge = _applies_reverse_charge(draft, jurisdiction)
    if reverse_charge:
        warnings.append(
            f"{REVERSE_CHARGE_NOTE}: B2B supply to buyer {draft.buyer_tax_id}, "
            f"{jurisdiction.tax_label} is accounted for by the recipient"
        )
    elif (
        jurisdiction.cross_border_rule is CrossBorderRule.REVERSE_CHARGE
        and draft.transaction_type is TransactionType.B2B
    ):
        warnings.append(
            f"B2B sale without a valid buyer tax id ({draft.buyer_tax_id or 'none'}); "
            f"{jurisdiction.tax_label} charged"
        )

    breakdown = compute_tax(subtotal, jurisdiction, draft.currency, reverse_charge)
    computed_tax = sum((c.amount for c in breakdown), Decimal("0"))
    computed_total = quantize(subtotal, draft.currency) + computed_tax

    tax_matches = True
    if draft.tax_amount is None:
        warnings.append(f"{jurisdiction.tax_label} not declared; computed {computed_tax} adopted")
    elif not within_tolerance(draft.tax_amount, computed_tax, draft.currency):
        tax_matches = False
        warnings.append(
            f"Declared {jurisdiction.tax_label} {draft.tax_amount} differs from "
            f"computed {computed_tax}"
        )
    elif draft.total is not None and not within_tolerance(
        draft.total, computed_total, draft.currency
    ):
        warnings.append(f"Declared total {draft.total} differs from computed {computed_total}")

    return ComplianceVerdict(
        is_compliant=not missing and tax_matches,
        jurisdiction=code,
        tax_breakdown=breakdown,
        missing_fields=tuple(missing),
        warnings=tuple(warnings),
        computed_tax=computed_tax,
        computed_total=computed_total,
        invoice_format_name=jurisdiction.invoice_format_name,
        reverse_charge=reverse_charge,
    )


def verdict_confidence(verdict: ComplianceVerdict) -> float:
    """Confidence in a compliance verdict.

    Full confidence when tax was computed from a known jurisdiction; lower
    when the verdict rests on missing data.
    """
    if verdict.jurisdiction is None or verdict.computed_tax is None:
        return 30.0
    return max(50.0, 100.0 - 10.0 * len(verdict.missing_fields))


class ComplianceStage(AnalysisStage):
    """Rule-table compliance check as a pipeline stage."""

    name = StageName.COMPLIANCE

    def compute(self, ctx: StageContext) -> tuple[ComplianceVerdict, float]:
        verdict = check(ctx.draft, ctx.tables)
        if not verdict.is_compliant:
            logger.info(
                f"Job {ctx.job_id}: not compliant for {verdict.jurisdiction} "
                f"(missing={list(verdict.missing_fields)})"
            )
        return verdict, verdict_confidence(verdict)

    def describe(self, value: ComplianceVerdict) -> str:  # type: ignore[override]
        components = ", ".join(f"{c.label} {c.rate:%} = {c.amount}" for c in value.tax_breakdown)
        return (
            f"Jurisdiction {value.jurisdiction}, compliant={value.is_compliant}, "
            f"tax: {components or 'n/a'}, missing fields: {list(value.missing_fields)}, "
            f"warnings: {list(value.warnings)}"
        )
