"""Deterministic fraud and anomaly scoring.

Heuristics (thresholds live in ``RuleTables.fraud``):
- Price anomaly: market variance beyond the configured percentage (HIGH)
- High value: invoice total above the configured threshold (MEDIUM)
- Threshold proximity: total just below an approval threshold (LOW); no
  thresholds are configured by default

The score is a capped weighted sum of anomaly severities. An invoice with no
anomalies still carries a small baseline score for residual uncertainty.
"""

import logging
from decimal import Decimal

from services.rules.tables import FraudPolicy
from services.shared.schema import (
    Anomaly,
    FraudSignal,
    InvoiceDraft,
    MarketVerdict,
    Severity,
    StageName,
)
from services.shared.stage import AnalysisStage, StageContext

logger = logging.getLogger(__name__)

PRICE_ANOMALY = "PRICE_ANOMALY"
HIGH_VALUE = "HIGH_VALUE"
THRESHOLD_PROXIMITY = "THRESHOLD_PROXIMITY"


def _weight(severity: Severity, policy: FraudPolicy) -> int:
    return {
        Severity.HIGH: policy.high_weight,
        Severity.MEDIUM: policy.medium_weight,
        Severity.LOW: policy.low_weight,
    }[severity]


def score(
    draft: InvoiceDraft,
    market: MarketVerdict | None = None,
    policy: FraudPolicy | None = None,
) -> FraudSignal:
    """Score a draft for anomalies.

    Pure function: identical inputs always produce an identical FraudSignal.

    Args:
        draft: Extracted invoice
        market: Market verdict, when one is available
        policy: Thresholds and weights (defaults to FraudPolicy())

    Returns:
        FraudSignal with risk score in [0, 100]
    """
    policy = policy or FraudPolicy()
    anomalies: list[Anomaly] = []

    if market is not None and market.variance_pct is not None:
        if abs(market.variance_pct) > policy.price_anomaly_pct:
            anomalies.append(
                Anomaly(
                    type=PRICE_ANOMALY,
                    severity=Severity.HIGH,
                    message=(
                        f"Paid amount deviates {market.variance_pct}% from the market "
                        f"average {market.reference_avg}"
                    ),
                )
            )

    total = draft.effective_total
    if total is not None:
        if total > policy.high_value_threshold:
            anomalies.append(
                Anomaly(
                    type=HIGH_VALUE,
                    severity=Severity.MEDIUM,
                    message=(
                        f"Invoice total {total} {draft.currency} exceeds "
                        f"{policy.high_value_threshold}"
                    ),
                )
            )

        band = policy.threshold_proximity_pct / Decimal("100")
        for threshold in sorted(policy.approval_thresholds):
            if threshold * (1 - band) <= total < threshold:
                anomalies.append(
                    Anomaly(
                        type=THRESHOLD_PROXIMITY,
                        severity=Severity.LOW,
                        message=f"Total {total} is just below approval threshold {threshold}",
                    )
                )
                break

    if anomalies:
        risk = min(100, sum(_weight(a.severity, policy) for a in anomalies))
    else:
        risk = policy.baseline_score

    return FraudSignal(risk_score=risk, anomalies=tuple(anomalies))


class FraudStage(AnalysisStage):
    """Fraud scoring as a pipeline stage. Confidence is the inverse of risk."""

    name = StageName.FRAUD

    def compute(self, ctx: StageContext) -> tuple[FraudSignal, float]:
        signal = score(ctx.draft, ctx.market, ctx.tables.fraud)
        if signal.anomalies:
            logger.info(
                f"Job {ctx.job_id}: risk {signal.risk_score} "
                f"({', '.join(a.type for a in signal.anomalies)})"
            )
        return signal, float(100 - signal.risk_score)

    def describe(self, value: FraudSignal) -> str:  # type: ignore[override]
        found = "; ".join(f"{a.severity} {a.type}: {a.message}" for a in value.anomalies)
        return f"Risk score {value.risk_score}/100. Anomalies: {found or 'none'}"
