"""Market price comparison against a reference catalog.

An unknown product is not an error: the verdict says UNKNOWN and the
pipeline carries on.
"""

import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from services.rules.tables import MarketPolicy
from services.shared.schema import InvoiceDraft, MarketVerdict, Recommendation, StageName
from services.shared.stage import AnalysisStage, StageContext

logger = logging.getLogger(__name__)


def normalize_key(key: str) -> str:
    return " ".join(key.lower().split())


class ReferencePrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str | None = None
    min: Decimal | None = None
    max: Decimal | None = None
    avg: Decimal = Field(gt=0)
    currency: str = "USD"


class ReferenceCatalog(BaseModel):
    """Reference market prices keyed by normalized product key."""

    model_config = ConfigDict(frozen=True)

    entries: dict[str, ReferencePrice] = Field(default_factory=dict)

    @field_validator("entries")
    @classmethod
    def _normalize(cls, value: dict[str, ReferencePrice]) -> dict[str, ReferencePrice]:
        return {normalize_key(k): v for k, v in value.items()}

    def lookup(self, product_key: str | None) -> tuple[str, ReferencePrice] | None:
        """Find a reference price by exact key, else by a key contained in the text.

        The longest contained key wins, so "iphone 15 pro" beats "iphone 15".
        """
        if not product_key:
            return None
        key = normalize_key(product_key)
        if key in self.entries:
            return key, self.entries[key]
        contained = [k for k in self.entries if k in key]
        if not contained:
            return None
        best = max(contained, key=len)
        return best, self.entries[best]

    @classmethod
    def from_json_file(cls, path: str | Path) -> "ReferenceCatalog":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.model_validate({"entries": data.get("entries", data)})


DEFAULT_CATALOG = ReferenceCatalog(
    entries={
        "iphone 15": ReferencePrice(
            name="iPhone 15 128GB",
            min=Decimal("79900"),
            max=Decimal("82900"),
            avg=Decimal("81400"),
            currency="INR",
        ),
        "macbook": ReferencePrice(
            name="MacBook Air M2",
            min=Decimal("114900"),
            max=Decimal("119900"),
            avg=Decimal("117400"),
            currency="INR",
        ),
    }
)


def analyze(
    product_key: str | None,
    paid_amount: Decimal | None,
    catalog: ReferenceCatalog,
    policy: MarketPolicy | None = None,
) -> MarketVerdict:
    """Compare a paid amount with the catalog average.

    ``variance_pct = (paid - avg) / avg * 100``, rounded to two decimals.
    Above ``overpriced_pct`` is OVERPRICED, below ``great_deal_pct`` is
    GREAT_DEAL, anything in between FAIR_PRICE.
    """
    policy = policy or MarketPolicy()
    found = catalog.lookup(product_key)
    if found is None or paid_amount is None:
        return MarketVerdict(
            product_key=product_key,
            reference_avg=None,
            paid_amount=paid_amount,
            variance_pct=None,
            recommendation=Recommendation.UNKNOWN,
        )

    key, reference = found
    variance = ((paid_amount - reference.avg) / reference.avg * 100).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )
    if variance > policy.overpriced_pct:
        recommendation = Recommendation.OVERPRICED
    elif variance < policy.great_deal_pct:
        recommendation = Recommendation.GREAT_DEAL
    else:
        recommendation = Recommendation.FAIR_PRICE

    return MarketVerdict(
        product_key=key,
        reference_avg=reference.avg,
        paid_amount=paid_amount,
        variance_pct=variance,
        recommendation=recommendation,
    )


def product_and_price(draft: InvoiceDraft) -> tuple[str | None, Decimal | None]:
    """Product key and paid unit price for the draft's first line item.

    Falls back to the subtotal when there are no line items.
    """
    if draft.line_items:
        item = draft.line_items[0]
        price = item.unit_price
        if price is None and item.amount is not None and item.quantity:
            price = item.amount / item.quantity
        return item.product_key or item.description, price
    return None, draft.effective_subtotal


class MarketPriceStage(AnalysisStage):
    """Market price comparison as a pipeline stage."""

    name = StageName.MARKET

    def __init__(self, catalog: ReferenceCatalog = DEFAULT_CATALOG) -> None:
        self.catalog = catalog

    def compute(self, ctx: StageContext) -> tuple[MarketVerdict, float]:
        product_key, paid = product_and_price(ctx.draft)
        verdict = analyze(product_key, paid, self.catalog, ctx.tables.market)
        if verdict.recommendation is Recommendation.UNKNOWN:
            return verdict, ctx.tables.market.unknown_confidence
        return verdict, max(0.0, 100.0 - float(abs(verdict.variance_pct or 0)))

    def describe(self, value: MarketVerdict) -> str:  # type: ignore[override]
        if value.reference_avg is None:
            return f"No reference price for '{value.product_key}'"
        return (
            f"Paid {value.paid_amount} vs market average {value.reference_avg} "
            f"({value.variance_pct}%): {value.recommendation}"
        )
