"""Masking helpers for card data that may end up in logs."""

import re
from typing import Any

CARD_NUMBER_KEYS = {"cardNumber", "card_number", "CardNo"}
CVV_KEYS = {"cvv", "CVV2"}
EXPIRY_KEYS = {"expiryMonth", "expiryYear", "expiry_month", "expiry_year", "ExpMonth", "ExpYear"}
SECRET_KEYS = {
    "RestrictKey",
    "Postback.RestrictKey",
    "restrict_key",
    "processor_restrict_key",
    "postback_secret",
}

# bare 13-19 digit runs, or 4-digit groups split by one space/dash style
_PAN_PATTERN = re.compile(r"(?<![\w-])(?:\d{13,19}|\d{4}([ -])\d{4}\1\d{4}\1\d{1,7})(?![\w-])")


def mask_card_number(card_number: str) -> str:
    cleaned = re.sub(r"\s+", "", str(card_number))
    if len(cleaned) <= 4:
        return "*" * len(cleaned)
    return "*" * (len(cleaned) - 4) + cleaned[-4:]


def mask_cvv(cvv: str) -> str:
    return "*" * max(len(str(cvv)), 3)


def mask_text(text: str) -> str:
    return _PAN_PATTERN.sub(lambda m: mask_card_number(re.sub(r"[ -]", "", m.group(0))), text)


def sanitize(value: Any) -> Any:
    """Return a copy of ``value`` with card data masked and secrets removed."""
    if isinstance(value, dict):
        sanitized = {}
        for key, item in value.items():
            if key in SECRET_KEYS:
                continue
            if item is None:
                sanitized[key] = None
            elif key in CARD_NUMBER_KEYS:
                sanitized[key] = mask_card_number(item)
            elif key in CVV_KEYS:
                sanitized[key] = mask_cvv(item)
            elif key in EXPIRY_KEYS:
                sanitized[key] = "**"
            else:
                sanitized[key] = sanitize(item)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    if isinstance(value, str):
        return mask_text(value)
    return value
