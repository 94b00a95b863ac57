import base64
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from restopay.cart import snapshot_subtotal
from restopay.errors import PaymentValidationError

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 12
_PHONE_INPUT = re.compile(r"^\+?[\d\s\-]+$")


def normalize_phone_number(phone_number: str, country_code: str = "254") -> str:
    """Format a phone number to the M-Pesa format (254XXXXXXXXX)"""
    phone = "".join(ch for ch in str(phone_number).strip() if ch.isdigit())
    if not phone:
        return phone

    if phone.startswith("0"):
        # 0XXXXXXXXX -> 254XXXXXXXXX
        phone = country_code + phone[1:]
    elif len(phone) == 9:
        # Subscriber number without any prefix
        phone = country_code + phone

    # "+254..." lands here already stripped of the plus sign
    return phone


def validate_phone_number(phone_number: str, country_code: str = "254") -> str:
    """Normalize and check the result is a plausible MSISDN, raising on failure."""
    if not phone_number or not str(phone_number).strip():
        raise PaymentValidationError("Phone number is required")
    if not _PHONE_INPUT.match(str(phone_number).strip()):
        raise PaymentValidationError(
            "Please enter a valid phone number, e.g. 0712345678",
            detail="only digits, spaces, '-' and a leading '+' are allowed",
        )
    normalized = normalize_phone_number(phone_number, country_code)
    if not MIN_PHONE_DIGITS <= len(normalized) <= MAX_PHONE_DIGITS:
        raise PaymentValidationError(
            "Please enter a valid phone number, e.g. 0712345678",
            detail=f"normalized length {len(normalized)} outside {MIN_PHONE_DIGITS}-{MAX_PHONE_DIGITS}",
        )
    return normalized


def to_minor_units(amount) -> int:
    """Round an amount to whole shillings; Daraja rejects fractional amounts."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise PaymentValidationError("Amount must be a number", detail=f"amount={amount!r}")
    if not value.is_finite():
        raise PaymentValidationError("Amount must be a number", detail=f"amount={amount!r}")
    rounded = int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if rounded <= 0:
        raise PaymentValidationError("Amount must be greater than zero", detail=f"amount={amount!r}")
    return rounded


def ensure_amount_matches_items(amount: int, items) -> None:
    """The charged amount must be the rounded subtotal of the cart being paid for."""
    if not any(isinstance(item, dict) and item.get("name") for item in items or []):
        return
    expected = int(snapshot_subtotal(items).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if amount != expected:
        raise PaymentValidationError(
            "The payment amount does not match your cart total. Please refresh your cart and try again.",
            detail=f"amount={amount} cart_subtotal={expected}",
        )


def validate_table_number(table_number) -> str:
    table = str(table_number).strip() if table_number is not None else ""
    if not table:
        raise PaymentValidationError("Table number is required. Scan the QR code on your table.")
    if len(table) > 20:
        raise PaymentValidationError("Table number is too long")
    return table


def generate_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("utf-8")


def basic_auth_header(consumer_key: str, consumer_secret: str) -> str:
    token = base64.b64encode(f"{consumer_key}:{consumer_secret}".encode("utf-8")).decode("utf-8")
    return f"Basic {token}"
