"""Versioned jurisdiction tax tables and decision policy thresholds.

RuleTables is pure data. Stages receive a snapshot and never mutate it; new
rates or jurisdictions are introduced by loading a new table (see
``services.rules.store``), not by editing code.

The shipped defaults are illustrative, not tax advice.
"""

import json
import re
from decimal import Decimal
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CrossBorderRule(StrEnum):
    NONE = "NONE"
    REVERSE_CHARGE = "REVERSE_CHARGE"


class TaxSplit(BaseModel):
    """One named component of a jurisdiction's tax, e.g. CGST 9%."""

    model_config = ConfigDict(frozen=True)

    label: str
    rate: Decimal = Field(ge=0, le=1)


class Jurisdiction(BaseModel):
    """Tax and compliance rules for one ISO country code.

    Attributes:
        tax_label: Display name of the tax (VAT, GST, ...)
        rate: Combined rate; used when ``split_components`` is empty
        split_components: Named components summed into the tax amount
        required_fields: InvoiceDraft fields or attribute keys that must be present
        invoice_format_name: Document title required by the jurisdiction
        cross_border_rule: Treatment of B2B sales to buyers with a tax id
        tax_id_pattern: Regex a buyer tax id must fully match
    """

    model_config = ConfigDict(frozen=True)

    tax_label: str
    rate: Decimal = Field(ge=0, le=1)
    split_components: tuple[TaxSplit, ...] = ()
    required_fields: tuple[str, ...] = ()
    invoice_format_name: str = "Invoice"
    cross_border_rule: CrossBorderRule = CrossBorderRule.NONE
    tax_id_pattern: str | None = None

    @field_validator("tax_id_pattern")
    @classmethod
    def _compiles(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"Invalid tax id pattern: {e}") from e
        return value

    def components(self) -> tuple[TaxSplit, ...]:
        """Tax components to apply; a single component when no split is defined."""
        if self.split_components:
            return self.split_components
        return (TaxSplit(label=self.tax_label, rate=self.rate),)

    def is_valid_tax_id(self, tax_id: str | None) -> bool:
        if not tax_id:
            return False
        if self.tax_id_pattern is None:
            return True
        normalized = tax_id.replace(" ", "").upper()
        return re.fullmatch(self.tax_id_pattern, normalized) is not None


class FraudPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    price_anomaly_pct: Decimal = Decimal("20")
    high_value_threshold: Decimal = Decimal("100000")
    approval_thresholds: tuple[Decimal, ...] = ()
    threshold_proximity_pct: Decimal = Decimal("5")
    high_weight: int = 40
    medium_weight: int = 20
    low_weight: int = 5
    baseline_score: int = 5
    reject_score: int = 70
    review_score: int = 30


class MarketPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    overpriced_pct: Decimal = Decimal("10")
    great_deal_pct: Decimal = Decimal("-5")
    unknown_confidence: float = 50.0


class ReconciliationPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Absolute difference accepted as bank fees / rounding
    tolerance: Decimal = Decimal("5.00")


class RuleTables(BaseModel):
    """Jurisdiction tables plus the policy thresholds the stages apply."""

    model_config = ConfigDict(frozen=True)

    version: str
    jurisdictions: dict[str, Jurisdiction]
    country_aliases: dict[str, str] = Field(default_factory=dict)
    fraud: FraudPolicy = Field(default_factory=FraudPolicy)
    market: MarketPolicy = Field(default_factory=MarketPolicy)
    reconciliation: ReconciliationPolicy = Field(default_factory=ReconciliationPolicy)

    @field_validator("jurisdictions")
    @classmethod
    def _upper_keys(cls, value: dict[str, Jurisdiction]) -> dict[str, Jurisdiction]:
        return {k.upper(): v for k, v in value.items()}

    @field_validator("country_aliases")
    @classmethod
    def _normalize_aliases(cls, value: dict[str, str]) -> dict[str, str]:
        return {k.strip().lower(): v.upper() for k, v in value.items()}

    def resolve_country(self, country: str | None) -> str | None:
        """Map a country code or name to the ISO key used by ``jurisdictions``."""
        if not country:
            return None
        stripped = country.strip()
        if stripped.upper() in self.jurisdictions:
            return stripped.upper()
        return self.country_aliases.get(stripped.lower(), stripped.upper())

    def jurisdiction(self, country: str | None) -> Jurisdiction | None:
        code = self.resolve_country(country)
        if code is None:
            return None
        return self.jurisdictions.get(code)

    @classmethod
    def from_json_file(cls, path: str | Path) -> "RuleTables":
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2)


DEFAULT_RULE_TABLES = RuleTables(
    version="2024.1",
    jurisdictions={
        "DE": Jurisdiction(
            tax_label="VAT",
            rate=Decimal("0.19"),
            required_fields=("invoice_number", "issue_date", "customer_name", "seller_tax_id"),
            invoice_format_name="Rechnung",
            cross_border_rule=CrossBorderRule.REVERSE_CHARGE,
            tax_id_pattern=r"[A-Z]{2}[0-9A-Z]{8,12}",
        ),
        "IN": Jurisdiction(
            tax_label="GST",
            rate=Decimal("0.18"),
            split_components=(
                TaxSplit(label="CGST", rate=Decimal("0.09")),
                TaxSplit(label="SGST", rate=Decimal("0.09")),
            ),
            required_fields=("invoice_number", "issue_date", "customer_name", "place_of_supply"),
            invoice_format_name="Tax Invoice",
            tax_id_pattern=r"[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][0-9A-Z]Z[0-9A-Z]",
        ),
        "GB": Jurisdiction(
            tax_label="VAT",
            rate=Decimal("0.20"),
            required_fields=("invoice_number", "issue_date", "customer_name", "seller_tax_id"),
            invoice_format_name="VAT Invoice",
            tax_id_pattern=r"GB[0-9]{9}",
        ),
        "FR": Jurisdiction(
            tax_label="TVA",
            rate=Decimal("0.20"),
            required_fields=("invoice_number", "issue_date", "customer_name", "seller_tax_id"),
            invoice_format_name="Facture",
            cross_border_rule=CrossBorderRule.REVERSE_CHARGE,
            tax_id_pattern=r"[A-Z]{2}[0-9A-Z]{8,12}",
        ),
        "US": Jurisdiction(
            tax_label="Sales Tax",
            rate=Decimal("0"),
            required_fields=("invoice_number", "issue_date"),
            invoice_format_name="Invoice",
        ),
    },
    country_aliases={
        "germany": "DE",
        "deutschland": "DE",
        "india": "IN",
        "united kingdom": "GB",
        "uk": "GB",
        "great britain": "GB",
        "france": "FR",
        "united states": "US",
        "usa": "US",
    },
)
