"""
Input validation and sanitization for untrusted checkout data.

Every function here is total: malformed input yields a negative verdict or an
empty string, never an exception. Nothing is mutated and nothing touches I/O.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from .models import ShippingInfo

MAX_CART_ITEMS = 100
MAX_QUANTITY = 999
MAX_EMAIL_LENGTH = 254

_EMAIL_RE = re.compile(
    r"[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*"
)
_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
_PHONE_RE = re.compile(r"[\d\s\-()+.]{10,25}", re.ASCII)
_NON_DIGIT_RE = re.compile(r"\D", re.ASCII)

_POSTAL_PATTERNS = {
    "US": re.compile(r"\d{5}(-?\d{4})?", re.ASCII),
    "CA": re.compile(r"[A-Z]\d[A-Z]\s*\d[A-Z]\d", re.ASCII | re.IGNORECASE),
    "UK": re.compile(r"[A-Z]{1,2}\d[A-Z\d]?\s*\d[A-Z]{2}", re.ASCII | re.IGNORECASE),
}
_POSTAL_PATTERNS["GB"] = _POSTAL_PATTERNS["UK"]
_POSTAL_GENERIC = re.compile(r"[A-Z0-9\s\-]{2,15}", re.ASCII | re.IGNORECASE)

_ANGLE_BRACKETS_RE = re.compile(r"[<>]")
_JS_SCHEME_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+\s*=", re.ASCII | re.IGNORECASE)


@dataclass(frozen=True)
class ValidationResult:
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_email(email: Any) -> bool:
    if not email or not isinstance(email, str):
        return False
    return len(email) <= MAX_EMAIL_LENGTH and _EMAIL_RE.fullmatch(email) is not None


def validate_identifier(value: Any) -> bool:
    if not value or not isinstance(value, str):
        return False
    return _UUID_RE.fullmatch(value) is not None


def validate_phone_number(phone: Any) -> bool:
    if not phone or not isinstance(phone, str):
        return False
    if len(_NON_DIGIT_RE.sub("", phone)) < 10:
        return False
    return _PHONE_RE.fullmatch(phone) is not None


def validate_postal_code(code: Any, country: Any = None) -> bool:
    if not code or not isinstance(code, str):
        return False

    code = code.strip()
    if len(code) < 2 or len(code) > 15:
        return False

    country_code = country.strip().upper() if isinstance(country, str) else ""
    pattern = _POSTAL_PATTERNS.get(country_code, _POSTAL_GENERIC)
    return pattern.fullmatch(code) is not None


def validate_quantity(value: Any) -> str | None:
    """Return an error message for a bad quantity, or None when it is usable."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return "Invalid number"
    if isinstance(value, float) and not value.is_integer():
        return "Quantity must be a whole number"
    if value < 1:
        return "Number must be at least 1"
    if value > MAX_QUANTITY:
        return f"Number must not exceed {MAX_QUANTITY}"
    return None


def _text(info: dict, key: str) -> str | None:
    value = info.get(key)
    if not isinstance(value, str) or not value.strip():
        return None
    return value


def _check_length(errors: list[str], value: str | None, *, required: str, minimum: int,
                  too_short: str, maximum: int, too_long: str) -> None:
    if value is None:
        errors.append(required)
    elif len(value.strip()) < minimum:
        errors.append(too_short)
    elif len(value) > maximum:
        errors.append(too_long)


def validate_shipping_info(info: Any) -> ValidationResult:
    if not info or not isinstance(info, dict):
        return ValidationResult(["Invalid shipping information"])

    errors: list[str] = []

    _check_length(
        errors, _text(info, "name"),
        required="Full name is required",
        minimum=2, too_short="Name must be at least 2 characters",
        maximum=100, too_long="Name must not exceed 100 characters",
    )

    phone = _text(info, "phone")
    if phone is None:
        errors.append("Phone number is required")
    elif not validate_phone_number(phone):
        errors.append("Phone number must be at least 10 digits (e.g., (555) 123-4567 or +1-555-123-4567)")

    _check_length(
        errors, _text(info, "addressLine1"),
        required="Street address is required",
        minimum=3, too_short="Address must be at least 3 characters",
        maximum=200, too_long="Address line 1 must not exceed 200 characters",
    )

    line2 = info.get("addressLine2")
    if line2 and (not isinstance(line2, str) or len(line2) > 200):
        errors.append("Address line 2 must not exceed 200 characters")

    _check_length(
        errors, _text(info, "city"),
        required="City is required",
        minimum=2, too_short="City must be at least 2 characters",
        maximum=100, too_long="City must not exceed 100 characters",
    )
    _check_length(
        errors, _text(info, "state"),
        required="State/Province is required",
        minimum=2, too_short="State/Province must be at least 2 characters",
        maximum=100, too_long="State/Province must not exceed 100 characters",
    )

    postal_code = _text(info, "postalCode")
    if postal_code is None:
        errors.append("Postal/ZIP code is required")
    elif not validate_postal_code(postal_code, info.get("country")):
        errors.append("Postal/ZIP code must be 2-15 characters (e.g., 12345, 12345-6789, A1B 2C3)")

    country = _text(info, "country")
    if country is None:
        errors.append("Country is required")
    elif len(country.strip()) != 2:
        errors.append("Country must be a 2-letter code (e.g., US, CA, GB)")

    return ValidationResult(errors)


def validate_cart_items(items: Any) -> ValidationResult:
    if not isinstance(items, list):
        return ValidationResult(["Cart items must be an array"])
    if not items:
        return ValidationResult(["Cart is empty"])
    if len(items) > MAX_CART_ITEMS:
        return ValidationResult([f"Cart cannot contain more than {MAX_CART_ITEMS} items"])

    errors: list[str] = []
    for position, item in enumerate(items, start=1):
        if not item or not isinstance(item, dict):
            errors.append(f"Item {position}: Invalid item format")
            continue
        if not validate_identifier(item.get("productId")):
            errors.append(f"Item {position}: Invalid product ID")
        quantity_error = validate_quantity(item.get("quantity"))
        if quantity_error:
            errors.append(f"Item {position}: {quantity_error}")

    return ValidationResult(errors)


def sanitize_string(value: Any, max_length: int = 1000) -> str:
    """
    Strip the markup most likely to turn into stored XSS once echoed back in
    the hosted checkout page or the admin UI. Not an HTML sanitizer.
    """
    if not value or not isinstance(value, str):
        return ""

    sanitized = value.strip()[:max_length]
    sanitized = _ANGLE_BRACKETS_RE.sub("", sanitized)
    sanitized = _JS_SCHEME_RE.sub("", sanitized)
    sanitized = _EVENT_HANDLER_RE.sub("", sanitized)
    return sanitized


def sanitize_shipping_info(info: dict) -> ShippingInfo:
    """Build the shipping snapshot from already validated raw input."""
    return ShippingInfo(
        name=sanitize_string(info.get("name"), 100),
        phone=sanitize_string(info.get("phone"), 20),
        address_line1=sanitize_string(info.get("addressLine1"), 200),
        address_line2=sanitize_string(info.get("addressLine2"), 200),
        city=sanitize_string(info.get("city"), 100),
        state=sanitize_string(info.get("state"), 100),
        postal_code=sanitize_string(info.get("postalCode"), 20),
        country=sanitize_string(info.get("country"), 2).upper(),
    )
