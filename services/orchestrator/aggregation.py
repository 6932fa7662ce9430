"""Aggregation of stage results into a decision status and overall confidence.

Status mapping, first match wins:
- REJECTED: compliance verdict not compliant, or fraud risk >= reject score
- NEEDS_REVIEW: risk >= review score, a mandatory stage skipped or failed,
  any stage degraded, or a reconciliation that did not match
- APPROVED: everything else

Overall confidence is the weighted average of the stages that executed.
Weights of stages that did not execute are redistributed proportionally over
the ones that did, and a degraded stage counts with a reduced confidence.
"""

from dataclasses import dataclass

from services.rules.tables import FraudPolicy
from services.shared.schema import (
    ComplianceVerdict,
    DecisionStatus,
    FraudSignal,
    ReconciliationMatch,
    StageName,
    StageResult,
    StageStatus,
)

STAGE_WEIGHTS: dict[StageName, int] = {
    StageName.EXTRACTION: 30,
    StageName.COMPLIANCE: 30,
    StageName.FRAUD: 20,
    StageName.MARKET: 10,
    StageName.RECONCILIATION: 10,
}

ALWAYS_MANDATORY = (
    StageName.EXTRACTION,
    StageName.COMPLIANCE,
    StageName.FRAUD,
    StageName.MARKET,
)


@dataclass(frozen=True)
class Outcome:
    status: DecisionStatus
    reason_code: str | None
    flags: tuple[str, ...]


def mandatory_stages(requires_reconciliation: bool) -> tuple[StageName, ...]:
    if requires_reconciliation:
        return ALWAYS_MANDATORY + (StageName.RECONCILIATION,)
    return ALWAYS_MANDATORY


def overall_confidence(
    results: dict[StageName, StageResult | None], degraded_factor: float = 0.5
) -> float:
    """Weighted confidence over executed stages, in [0, 100]."""
    weighted = 0.0
    total_weight = 0
    for stage, result in results.items():
        if result is None or not result.executed or result.confidence is None:
            continue
        weight = STAGE_WEIGHTS[stage]
        confidence = result.confidence
        if result.status is StageStatus.DEGRADED:
            confidence *= degraded_factor
        weighted += weight * confidence
        total_weight += weight
    if total_weight == 0:
        return 0.0
    return round(max(0.0, min(100.0, weighted / total_weight)), 2)


def _value(results: dict[StageName, StageResult | None], stage: StageName):
    result = results.get(stage)
    if result is None or not result.executed:
        return None
    return result.value


def decide(
    results: dict[StageName, StageResult | None],
    policy: FraudPolicy,
    requires_reconciliation: bool,
) -> Outcome:
    """Map stage results to a decision status, reason code and flags."""
    flags: list[str] = []
    reject: list[str] = []
    review: list[str] = []

    compliance: ComplianceVerdict | None = _value(results, StageName.COMPLIANCE)
    if compliance is not None and not compliance.is_compliant:
        reject.append("NON_COMPLIANT")

    fraud: FraudSignal | None = _value(results, StageName.FRAUD)
    if fraud is not None:
        if fraud.risk_score >= policy.reject_score:
            reject.append("HIGH_RISK")
        elif fraud.risk_score >= policy.review_score:
            review.append("ELEVATED_RISK")

    for stage in mandatory_stages(requires_reconciliation):
        result = results.get(stage)
        if result is None or result.status is StageStatus.FAILED:
            review.append(f"STAGE_FAILED:{stage}")
        elif result.status is StageStatus.SKIPPED:
            review.append(result.reason or f"STAGE_SKIPPED:{stage}")

    for stage, result in results.items():
        if result is not None and result.status is StageStatus.DEGRADED:
            review.append(f"STAGE_DEGRADED:{stage}")

    reconciliation: ReconciliationMatch | None = _value(results, StageName.RECONCILIATION)
    if reconciliation is not None and not reconciliation.matched:
        review.append("PAYMENT_UNMATCHED")

    flags.extend(reject)
    flags.extend(review)
    if reject:
        return Outcome(DecisionStatus.REJECTED, reject[0], tuple(flags))
    if review:
        return Outcome(DecisionStatus.NEEDS_REVIEW, review[0], tuple(flags))
    return Outcome(DecisionStatus.APPROVED, None, tuple(flags))
