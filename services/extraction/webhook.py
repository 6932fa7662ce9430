"""Normalization of purchase/payment webhooks from e-commerce platforms.

Each supported platform is transformed into one ``Purchase`` shape before the
required-field check. Supported: Stripe, Shopify, WooCommerce, Razorpay, and a
generic flat payload (``amount``, ``country``, ``product``).
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from services.extraction.mapping import amount
from services.shared.errors import ExtractionFailure
from services.shared.money import ZERO_DECIMAL_CURRENCIES, from_minor_units
from services.shared.schema import InvoiceDraft, LineItem, TransactionType

REQUIRED_WEBHOOK_FIELDS = ("amount", "country", "product")

# Core fields averaged into the webhook extraction confidence
CONFIDENCE_FIELDS = ("invoice_number", "country", "customer_name", "subtotal", "total", "currency")


class PurchaseProduct(BaseModel):
    name: str | None = None
    quantity: Decimal = Decimal("1")
    price: Decimal | None = None
    category: str | None = None
    sku: str | None = None


class Purchase(BaseModel):
    """Platform-independent view of a purchase event."""

    platform: str
    transaction_id: str | None = None
    invoice_number: str | None = None
    amount: Decimal | None = None
    subtotal: Decimal | None = None
    tax_amount: Decimal | None = None
    currency: str = "USD"
    customer_name: str | None = None
    customer_email: str | None = None
    country: str | None = None
    buyer_tax_id: str | None = None
    transaction_type: str | None = None
    products: list[PurchaseProduct] = Field(default_factory=list)
    attributes: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime | None = None

    def missing_required(self) -> list[str]:
        missing = []
        if self.amount is None:
            missing.append("amount")
        if not self.country:
            missing.append("country")
        if not any(p.name for p in self.products):
            missing.append("product")
        return missing


def _minor(value: Any, currency: str) -> Decimal | None:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return amount(value, "amount")
    try:
        return from_minor_units(value, currency)
    except ValueError as e:
        raise ExtractionFailure(f"Malformed amount: {value!r}") from e


def _text(value: Any) -> str | None:
    """Platform ids arrive as strings or numbers; both are kept as text."""
    if value is None or value == "" or isinstance(value, dict | list):
        return None
    return str(value)


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        if isinstance(value, int | float) and not isinstance(value, bool):
            return datetime.fromtimestamp(value, UTC)
        return datetime.fromisoformat(str(value))
    except (ValueError, OverflowError, OSError):
        return None


def _full_name(first: Any, last: Any) -> str | None:
    if first and last:
        return f"{first} {last}"
    return None


def detect_platform(payload: dict[str, Any]) -> str:
    """Guess the sending platform from the payload shape."""
    if isinstance(payload.get("data"), dict) and "object" in payload["data"]:
        return "stripe"
    if payload.get("event") and isinstance(payload.get("payload"), dict):
        return "razorpay"
    if "total_price" in payload and "line_items" in payload:
        return "shopify"
    if isinstance(payload.get("billing"), dict) and "total" in payload:
        return "woocommerce"
    return "generic"


def _stripe(event: dict[str, Any]) -> Purchase:
    if event.get("type") not in ("payment_intent.succeeded", "charge.succeeded"):
        raise ExtractionFailure(f"Stripe event '{event.get('type')}' is not a purchase")
    data = event["data"]["object"]
    currency = str(data.get("currency") or "usd").upper()
    billing = data.get("billing_details") or {}
    address = billing.get("address") or {}
    metadata = data.get("metadata") or {}
    total = _minor(data.get("amount"), currency)
    return Purchase(
        platform="stripe",
        transaction_id=_text(data.get("id")),
        invoice_number=_text(metadata.get("invoice_number")),
        amount=total,
        currency=currency,
        customer_name=_text(billing.get("name")),
        customer_email=_text(data.get("receipt_email") or billing.get("email")),
        country=_text(address.get("country")),
        buyer_tax_id=_text(metadata.get("buyer_tax_id")),
        products=[PurchaseProduct(name=_text(data.get("description")), price=total)],
        timestamp=_timestamp(data.get("created")),
    )


def _shopify(order: dict[str, Any]) -> Purchase:
    customer = order.get("customer") or {}
    address = order.get("shipping_address") or order.get("billing_address") or {}
    currency = str(order.get("currency") or "USD").upper()
    return Purchase(
        platform="shopify",
        transaction_id=str(order.get("id") or order.get("order_number") or "") or None,
        invoice_number=str(order["order_number"]) if order.get("order_number") else None,
        amount=amount(order.get("total_price"), "total_price"),
        subtotal=amount(order.get("subtotal_price"), "subtotal_price"),
        tax_amount=amount(order.get("total_tax"), "total_tax"),
        currency=currency,
        customer_name=_full_name(customer.get("first_name"), customer.get("last_name")),
        customer_email=_text(order.get("email") or customer.get("email")),
        country=_text(address.get("country_code") or address.get("country")),
        products=[
            PurchaseProduct(
                name=_text(item.get("name") or item.get("title")),
                quantity=amount(item.get("quantity"), "quantity") or Decimal("1"),
                price=amount(item.get("price"), "price"),
                category=_text(item.get("product_type")),
                sku=_text(item.get("sku")),
            )
            for item in order.get("line_items") or []
        ],
        timestamp=_timestamp(order.get("created_at")),
    )


def _woocommerce(order: dict[str, Any]) -> Purchase:
    billing = order.get("billing") or {}
    return Purchase(
        platform="woocommerce",
        transaction_id=str(order.get("id") or order.get("order_key") or "") or None,
        invoice_number=str(order["number"]) if order.get("number") else None,
        amount=amount(order.get("total"), "total"),
        tax_amount=amount(order.get("total_tax"), "total_tax"),
        currency=str(order.get("currency") or "USD").upper(),
        customer_name=_full_name(billing.get("first_name"), billing.get("last_name")),
        customer_email=_text(billing.get("email")),
        country=_text(billing.get("country")),
        products=[
            PurchaseProduct(
                name=_text(item.get("name")),
                quantity=amount(item.get("quantity"), "quantity") or Decimal("1"),
                price=amount(item.get("price"), "price"),
                sku=_text(item.get("sku")),
            )
            for item in order.get("line_items") or []
        ],
        timestamp=_timestamp(order.get("date_created")),
    )


def _razorpay(event: dict[str, Any]) -> Purchase:
    if event.get("event") != "payment.captured":
        raise ExtractionFailure(f"Razorpay event '{event.get('event')}' is not a purchase")
    payment = event["payload"]["payment"]["entity"]
    currency = str(payment.get("currency") or "INR").upper()
    notes = payment.get("notes") or {}
    total = _minor(payment.get("amount"), currency)
    return Purchase(
        platform="razorpay",
        transaction_id=_text(payment.get("id")),
        invoice_number=_text(notes.get("invoice_number")),
        amount=total,
        currency=currency,
        customer_name=_text((payment.get("customer_details") or {}).get("name")),
        customer_email=_text(payment.get("email")),
        country="IN",  # Razorpay only settles Indian merchants
        buyer_tax_id=_text(notes.get("gstin")),
        attributes={k: str(v) for k, v in notes.items() if k in ("place_of_supply", "sac_code")},
        products=[PurchaseProduct(name=_text(payment.get("description")), price=total)],
        timestamp=_timestamp(payment.get("created_at")),
    )


def _generic(payload: dict[str, Any]) -> Purchase:
    product = payload.get("product") or payload.get("description") or payload.get("product_name")
    if isinstance(product, dict):
        products = [
            PurchaseProduct(
                name=_text(product.get("name")),
                price=amount(product.get("price"), "price"),
                category=_text(product.get("category")),
                sku=_text(product.get("sku") or product.get("key")),
            )
        ]
    elif product:
        products = [
            PurchaseProduct(name=str(product), price=amount(payload.get("amount"), "amount"))
        ]
    else:
        products = []
    customer = payload.get("customer") or {}
    return Purchase(
        platform=str(payload.get("platform") or "generic"),
        transaction_id=_text(payload.get("transaction_id") or payload.get("id")),
        invoice_number=_text(payload.get("invoice_number")),
        amount=amount(payload.get("amount"), "amount"),
        subtotal=amount(payload.get("subtotal"), "subtotal"),
        tax_amount=amount(payload.get("tax_amount"), "tax_amount"),
        currency=str(payload.get("currency") or "USD").upper(),
        customer_name=_text(payload.get("customer_name") or customer.get("name")),
        customer_email=_text(payload.get("customer_email") or customer.get("email")),
        country=_text(
            payload.get("country") or payload.get("buyer_country") or customer.get("country")
        ),
        buyer_tax_id=_text(payload.get("buyer_tax_id") or customer.get("tax_id")),
        transaction_type=_text(payload.get("transaction_type")),
        attributes={k: str(v) for k, v in (payload.get("attributes") or {}).items()},
        products=products,
        timestamp=_timestamp(payload.get("timestamp")),
    )


_TRANSFORMS = {
    "stripe": _stripe,
    "shopify": _shopify,
    "woocommerce": _woocommerce,
    "razorpay": _razorpay,
}


def normalize_webhook(payload: dict[str, Any]) -> Purchase:
    """Transform a platform webhook into a Purchase.

    Raises:
        ExtractionFailure: Not a purchase event, malformed amounts or missing
            structure the platform guarantees
    """
    platform = detect_platform(payload)
    transform = _TRANSFORMS.get(platform, _generic)
    try:
        return transform(payload)
    except ValidationError as e:
        raise ExtractionFailure(
            f"Malformed {platform} webhook: {e.error_count()} invalid field(s)"
        ) from e
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        raise ExtractionFailure(f"Malformed {platform} webhook: {e}") from e


def draft_from_purchase(purchase: Purchase) -> tuple[InvoiceDraft, float]:
    """Build an InvoiceDraft and its confidence from a validated Purchase.

    The charged amount is the invoice total. When the platform does not break
    out tax, the amount is also taken as the subtotal and the compliance
    stage computes tax on top of it.

    Raises:
        ExtractionFailure: If required webhook fields are missing
    """
    missing = purchase.missing_required()
    if missing:
        raise ExtractionFailure(f"Webhook missing required fields: {', '.join(missing)}")

    line_items = tuple(
        LineItem(
            description=p.name or "",
            quantity=p.quantity,
            unit_price=p.price,
            amount=p.price * p.quantity if p.price is not None else None,
            product_key=p.sku,
            category=p.category,
        )
        for p in purchase.products
    )
    subtotal = purchase.subtotal
    if subtotal is None:
        subtotal = purchase.amount
        if purchase.tax_amount is not None:
            subtotal = purchase.amount - purchase.tax_amount

    transaction_type = TransactionType.B2B if purchase.buyer_tax_id else TransactionType.B2C
    if purchase.transaction_type:
        try:
            transaction_type = TransactionType(purchase.transaction_type.upper())
        except ValueError:
            pass

    invoice_number = purchase.invoice_number or purchase.transaction_id
    values = {
        "invoice_number": invoice_number,
        "country": purchase.country,
        "customer_name": purchase.customer_name,
        "subtotal": subtotal,
        "total": purchase.amount,
        "currency": purchase.currency,
    }
    # Values delivered by the platform are exact; absent ones score zero
    field_confidence = {
        name: 0.0 if value in (None, "") else 100.0 for name, value in values.items()
    }
    confidence = sum(field_confidence[f] for f in CONFIDENCE_FIELDS) / len(CONFIDENCE_FIELDS)

    draft = InvoiceDraft(
        invoice_number=invoice_number,
        issue_date=purchase.timestamp.date() if purchase.timestamp else None,
        country=purchase.country,
        customer_name=purchase.customer_name,
        line_items=line_items,
        subtotal=subtotal,
        tax_amount=purchase.tax_amount,
        total=purchase.amount,
        currency=purchase.currency,
        buyer_tax_id=purchase.buyer_tax_id,
        transaction_type=transaction_type,
        attributes=purchase.attributes,
        field_confidence=field_confidence,
        source=purchase.platform,
    )
    return draft, confidence


__all__ = [
    "Purchase",
    "REQUIRED_WEBHOOK_FIELDS",
    "detect_platform",
    "draft_from_purchase",
    "normalize_webhook",
]
