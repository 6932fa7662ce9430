"""Mapping of raw collaborator field maps onto InvoiceDraft.

Collaborators disagree on naming (``invoiceNumber``, ``invoice_no``,
``total_amount`` ...) and some wrap every value as
``{"value": ..., "confidence": ...}``. Both shapes are accepted here.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from services.shared.errors import ExtractionFailure
from services.shared.money import to_decimal
from services.shared.schema import InvoiceDraft, LineItem, TransactionType

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "invoice_number": ("invoice_number", "invoiceNumber", "invoice_no", "invoice_id", "number"),
    "issue_date": ("issue_date", "issueDate", "invoice_date", "invoiceDate", "date"),
    "country": ("country", "country_code", "countryCode", "jurisdiction"),
    "customer_name": ("customer_name", "customerName", "buyer_name", "buyerName", "customer"),
    "subtotal": ("subtotal", "sub_total", "net_amount", "netAmount"),
    "tax_amount": ("tax_amount", "taxAmount", "tax", "vat_amount", "vatAmount"),
    "total": ("total", "total_amount", "totalAmount", "grand_total", "amount_due"),
    "currency": ("currency", "currency_code", "currencyCode"),
    "line_items": ("line_items", "lineItems", "items"),
    "buyer_tax_id": ("buyer_tax_id", "buyerTaxId", "customer_tax_id", "buyer_vat_id"),
    "seller_tax_id": ("seller_tax_id", "sellerTaxId", "supplier_tax_id", "vat_id", "gstin"),
    "transaction_type": ("transaction_type", "transactionType"),
}

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%d.%m.%Y", "%B %d, %Y", "%d %B %Y")

_KNOWN_KEYS = {alias for aliases in FIELD_ALIASES.values() for alias in aliases} | {
    "confidence",
    "field_confidence",
}


def unwrap(raw: Any) -> tuple[Any, float | None]:
    """Split a ``{"value", "confidence"}`` wrapper into its parts."""
    if isinstance(raw, dict) and "value" in raw:
        confidence = raw.get("confidence")
        if isinstance(confidence, int | float) and not isinstance(confidence, bool):
            return raw["value"], float(confidence)
        return raw["value"], None
    return raw, None


def pick(fields: dict[str, Any], name: str) -> tuple[Any, float | None]:
    """Return the first aliased value present for a canonical field name."""
    for alias in FIELD_ALIASES[name]:
        if alias in fields:
            value, confidence = unwrap(fields[alias])
            if value not in (None, ""):
                return value, confidence
    return None, None


def parse_date(value: Any) -> date | None:
    """Parse common invoice date formats; None when unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def amount(value: Any, field: str) -> Decimal | None:
    try:
        return to_decimal(value)
    except ValueError as e:
        raise ExtractionFailure(f"Malformed amount for '{field}': {value!r}") from e


def parse_line_items(raw_items: Any) -> tuple[LineItem, ...]:
    if raw_items is None:
        return ()
    if not isinstance(raw_items, list):
        raise ExtractionFailure("'line_items' is not a list")
    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            raise ExtractionFailure("Line item is not an object")
        description = raw.get("description") or raw.get("name") or raw.get("title") or ""
        product_key = raw.get("product_key") or raw.get("sku")
        category = raw.get("category")
        quantity = amount(raw.get("quantity"), "quantity") or Decimal("1")
        unit_price = amount(raw.get("unit_price", raw.get("price")), "unit_price")
        line_amount = amount(raw.get("amount"), "amount")
        if line_amount is None and unit_price is not None:
            line_amount = unit_price * quantity
        items.append(
            LineItem(
                description=str(description),
                quantity=quantity,
                unit_price=unit_price,
                amount=line_amount,
                product_key=str(product_key) if product_key else None,
                category=str(category) if category else None,
            )
        )
    return tuple(items)


def draft_from_fields(
    fields: dict[str, Any], default_confidence: float, source: str = "document"
) -> InvoiceDraft:
    """Build an InvoiceDraft from a collaborator field map.

    Fields without their own confidence inherit ``default_confidence``; fields
    that are absent or unparseable get confidence 0. Unknown scalar keys are
    kept as jurisdiction attributes.

    Raises:
        ExtractionFailure: If amounts are malformed or no amount is present at all
    """
    field_confidence: dict[str, float] = {}
    values: dict[str, Any] = {}

    for name in FIELD_ALIASES:
        value, confidence = pick(fields, name)
        values[name] = value
        field_confidence[name] = (
            0.0 if value is None else (confidence if confidence is not None else default_confidence)
        )

    issue_date = parse_date(values["issue_date"])
    if values["issue_date"] is not None and issue_date is None:
        field_confidence["issue_date"] = 0.0

    subtotal = amount(values["subtotal"], "subtotal")
    tax_amount = amount(values["tax_amount"], "tax_amount")
    total = amount(values["total"], "total")
    line_items = parse_line_items(values["line_items"])
    if subtotal is None and total is None and not any(i.amount for i in line_items):
        raise ExtractionFailure("Document has no subtotal, total or line item amounts")

    transaction_type = TransactionType.B2B if values["buyer_tax_id"] else TransactionType.B2C
    if values["transaction_type"]:
        try:
            transaction_type = TransactionType(str(values["transaction_type"]).upper())
        except ValueError:
            pass

    attributes = {
        key: str(unwrap(raw)[0])
        for key, raw in fields.items()
        if key not in _KNOWN_KEYS and isinstance(unwrap(raw)[0], str | int | float)
    }

    return InvoiceDraft(
        invoice_number=str(values["invoice_number"]) if values["invoice_number"] else None,
        issue_date=issue_date,
        country=str(values["country"]) if values["country"] else None,
        customer_name=str(values["customer_name"]) if values["customer_name"] else None,
        line_items=line_items,
        subtotal=subtotal,
        tax_amount=tax_amount,
        total=total,
        currency=str(values["currency"] or "USD").upper(),
        buyer_tax_id=str(values["buyer_tax_id"]) if values["buyer_tax_id"] else None,
        seller_tax_id=str(values["seller_tax_id"]) if values["seller_tax_id"] else None,
        transaction_type=transaction_type,
        attributes=attributes,
        field_confidence=field_confidence,
        source=source,
    )
