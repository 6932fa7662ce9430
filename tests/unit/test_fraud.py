"""Unit tests for fraud and anomaly scoring."""

from decimal import Decimal

from services.fraud.stage import (
    HIGH_VALUE,
    PRICE_ANOMALY,
    THRESHOLD_PROXIMITY,
    FraudStage,
    score,
)
from services.rules.tables import DEFAULT_RULE_TABLES, FraudPolicy
from services.shared.schema import InvoiceDraft, MarketVerdict, Recommendation, Severity
from services.shared.stage import StageContext


def _draft(total: str) -> InvoiceDraft:
    return InvoiceDraft(total=Decimal(total), currency="INR")


def _market(variance: str) -> MarketVerdict:
    return MarketVerdict(
        product_key="iphone 15",
        reference_avg=Decimal("81400"),
        paid_amount=Decimal("100000"),
        variance_pct=Decimal(variance),
        recommendation=Recommendation.OVERPRICED,
    )


class TestScore:
    """Test the heuristics and the weighted score."""

    def test_price_anomaly_and_high_value(self) -> None:
        """HIGH (40) plus MEDIUM (20) anomalies score 60."""
        signal = score(_draft("250000"), _market("25"))

        assert signal.risk_score == 60
        assert [a.type for a in signal.anomalies] == [PRICE_ANOMALY, HIGH_VALUE]
        assert signal.anomalies[0].severity is Severity.HIGH
        assert signal.anomalies[1].severity is Severity.MEDIUM

    def test_negative_variance_is_anomaly(self) -> None:
        """Deviations below the market average count too."""
        signal = score(_draft("1000"), _market("-25"))
        assert signal.risk_score == 40

    def test_variance_at_threshold_is_not_anomaly(self) -> None:
        """The anomaly threshold is exclusive."""
        assert score(_draft("1000"), _market("20")).anomalies == ()

    def test_baseline_without_anomalies(self) -> None:
        """An unremarkable invoice carries the baseline score."""
        signal = score(_draft("1000"))

        assert signal.risk_score == 5
        assert signal.anomalies == ()

    def test_no_market_verdict(self) -> None:
        """Only the value heuristics run without a market verdict."""
        signal = score(_draft("250000"), None)
        assert [a.type for a in signal.anomalies] == [HIGH_VALUE]

    def test_threshold_proximity(self) -> None:
        """A total just below an approval threshold is flagged LOW."""
        policy = FraudPolicy(approval_thresholds=(Decimal("10000"),))

        signal = score(_draft("9800"), policy=policy)

        assert [a.type for a in signal.anomalies] == [THRESHOLD_PROXIMITY]
        assert signal.risk_score == 5
        assert score(_draft("10000"), policy=policy).anomalies == ()
        assert score(_draft("9000"), policy=policy).anomalies == ()

    def test_score_is_capped(self) -> None:
        """The weighted sum never exceeds 100."""
        policy = FraudPolicy(high_weight=80, medium_weight=50)
        assert score(_draft("250000"), _market("25"), policy).risk_score == 100

    def test_deterministic(self) -> None:
        """Identical inputs give identical signals."""
        draft, market = _draft("250000"), _market("25")
        assert score(draft, market) == score(draft, market)


class TestFraudStage:
    """Test the stage wrapper."""

    def test_confidence_is_inverse_risk(self) -> None:
        """Stage confidence is 100 minus the risk score."""
        ctx = StageContext(
            job_id="j-1", draft=_draft("250000"), tables=DEFAULT_RULE_TABLES, market=_market("25")
        )
        signal, confidence = FraudStage().compute(ctx)

        assert signal.risk_score == 60
        assert confidence == 40.0

    def test_policy_from_tables(self) -> None:
        """Thresholds come from the rule-table snapshot."""
        tables = DEFAULT_RULE_TABLES.model_copy(
            update={"fraud": FraudPolicy(high_value_threshold=Decimal("500"))}
        )
        ctx = StageContext(job_id="j-1", draft=_draft("1000"), tables=tables)

        signal, _ = FraudStage().compute(ctx)

        assert [a.type for a in signal.anomalies] == [HIGH_VALUE]

    def test_describe(self) -> None:
        """The summary lists the anomalies."""
        text = FraudStage().describe(score(_draft("250000")))
        assert "Risk score 20/100" in text
        assert HIGH_VALUE in text
