"""Input validation for a checkout submission.

``validate_payment`` turns the raw form strings of a ``PaymentRequest`` into a
``ValidatedPayment`` or raises ``ValidationError`` naming the wire field at
fault. Nothing is written anywhere until this has succeeded.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from checkout.exceptions import ValidationError
from checkout.sanitize import mask_card_number, mask_cvv
from checkout.schemas import AddressIn, Item, PaymentRequest

CARD_NUMBER_PATTERN = re.compile(r"[0-9]{15,16}")
CVV_PATTERN = re.compile(r"[0-9]{3,4}")
DIGITS_PATTERN = re.compile(r"[0-9]+")
MAX_ORDER_ID_LENGTH = 64
CENTS = Decimal("0.01")
# orders.amount is Numeric(10, 2)
MAX_AMOUNT = Decimal("99999999.99")


@dataclass(frozen=True, repr=False)
class CardInput:
    card_number: str
    expiry_month: int
    expiry_year: int  # four digits
    cvv: str

    @property
    def last4(self) -> str:
        return self.card_number[-4:]

    @property
    def wire_expiry_month(self) -> str:
        return f"{self.expiry_month:02d}"

    @property
    def wire_expiry_year(self) -> str:
        return f"{self.expiry_year % 100:02d}"

    def __repr__(self) -> str:
        return (
            f"CardInput(card_number={mask_card_number(self.card_number)!r}, "
            f"expiry='**/{self.wire_expiry_year}', cvv={mask_cvv(self.cvv)!r})"
        )

    __str__ = __repr__


@dataclass(frozen=True)
class Address:
    address: str
    zip_code: str
    city: str = ""
    state: str = ""

    def to_dict(self) -> dict:
        return {"address": self.address, "city": self.city, "state": self.state, "zipCode": self.zip_code}


@dataclass(frozen=True)
class ValidatedPayment:
    order_id: str
    card: CardInput
    amount: Decimal
    shipping_address: Address
    billing_address: Address
    items: list[Item] = field(default_factory=list)

    @property
    def amount_text(self) -> str:
        return format_amount(self.amount)


def luhn_valid(digits: str) -> bool:
    total = 0
    for index, char in enumerate(reversed(digits)):
        value = int(char)
        if index % 2 == 1:
            value *= 2
            if value > 9:
                value -= 9
        total += value
    return total % 10 == 0


def normalize_card_number(raw: str | None) -> str:
    if raw is None or not str(raw).strip():
        raise ValidationError("cardNumber", "Card number is required")
    number = re.sub(r"\s+", "", str(raw))
    if not CARD_NUMBER_PATTERN.fullmatch(number):
        raise ValidationError("cardNumber", "Invalid card number")
    if not luhn_valid(number):
        raise ValidationError("cardNumber", "Invalid card number")
    return number


def normalize_expiry(month: str | None, year: str | None, today: date | None = None) -> tuple[int, int]:
    """Return ``(month, four_digit_year)``; the card may expire this month but not earlier."""
    month_text = str(month).strip() if month is not None else ""
    if not DIGITS_PATTERN.fullmatch(month_text) or not 1 <= int(month_text) <= 12:
        raise ValidationError("expiryMonth", "Invalid expiry month")
    year_text = str(year).strip() if year is not None else ""
    if not DIGITS_PATTERN.fullmatch(year_text) or len(year_text) not in (2, 4):
        raise ValidationError("expiryYear", "Invalid expiry year")

    exp_month = int(month_text)
    exp_year = 2000 + int(year_text) if len(year_text) == 2 else int(year_text)

    today = today or datetime.now(timezone.utc).date()
    if (exp_year, exp_month) < (today.year, today.month):
        raise ValidationError("expiryYear", "Card has expired")
    return exp_month, exp_year


def normalize_cvv(raw: str | None) -> str:
    cvv = str(raw).strip() if raw is not None else ""
    if not CVV_PATTERN.fullmatch(cvv):
        raise ValidationError("cvv", "Invalid CVV")
    return cvv


def normalize_amount(raw) -> Decimal:
    if raw is None or isinstance(raw, bool) or (isinstance(raw, str) and not raw.strip()):
        raise ValidationError("amount", "Amount is required")
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation:
        raise ValidationError("amount", "Invalid amount")
    if not amount.is_finite():
        raise ValidationError("amount", "Invalid amount")
    try:
        amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError("amount", "Amount is too large")
    if amount <= 0:
        raise ValidationError("amount", "Amount must be greater than zero")
    if amount > MAX_AMOUNT:
        raise ValidationError("amount", f"Amount must be at most {MAX_AMOUNT}")
    return amount


def format_amount(amount: Decimal) -> str:
    """Two fractional digits and a leading zero: ``9.50``, ``0.50``."""
    return f"{amount.quantize(CENTS, rounding=ROUND_HALF_UP):.2f}"


def normalize_order_id(raw: str | None) -> str:
    order_id = (raw or "").strip()
    if not order_id:
        raise ValidationError("orderId", "Order ID is required")
    if len(order_id) > MAX_ORDER_ID_LENGTH:
        raise ValidationError("orderId", f"Order ID must be at most {MAX_ORDER_ID_LENGTH} characters")
    return order_id


def normalize_address(raw: AddressIn | None, prefix: str) -> Address:
    if raw is None or not raw.address.strip():
        raise ValidationError(f"{prefix}.address", "Address is required")
    if not raw.zip_code.strip():
        raise ValidationError(f"{prefix}.zipCode", "ZIP code is required")
    return Address(
        address=raw.address.strip(),
        zip_code=raw.zip_code.strip(),
        city=raw.city.strip(),
        state=raw.state.strip(),
    )


def validate_payment(request: PaymentRequest, today: date | None = None) -> ValidatedPayment:
    order_id = normalize_order_id(request.order_id)
    card_number = normalize_card_number(request.card_number)
    exp_month, exp_year = normalize_expiry(request.expiry_month, request.expiry_year, today=today)
    cvv = normalize_cvv(request.cvv)
    amount = normalize_amount(request.amount)

    shipping = normalize_address(request.shipping_address, "shippingAddress")
    if request.same_as_shipping or request.billing_address is None:
        billing = shipping
    else:
        billing = normalize_address(request.billing_address, "billingAddress")

    return ValidatedPayment(
        order_id=order_id,
        card=CardInput(card_number=card_number, expiry_month=exp_month, expiry_year=exp_year, cvv=cvv),
        amount=amount,
        shipping_address=shipping,
        billing_address=billing,
        items=list(request.items),
    )
