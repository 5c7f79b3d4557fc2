import re

from funnel.errors import ValidationError

POSTAL_CODE_LENGTH = 5

_NON_DIGITS = re.compile(r"[^0-9]")


def normalize_postal_code(raw) -> str:
    """Keep only ASCII decimal digits. Never raises."""
    if raw is None:
        return ""
    return _NON_DIGITS.sub("", str(raw))


def is_postal_code(raw) -> bool:
    return len(normalize_postal_code(raw)) == POSTAL_CODE_LENGTH


def parse_postal_code(raw) -> str:
    """
    Normalize and validate a US postal code.

    Invalid lengths are rejected outright, no truncation or padding.

    Raises:
        ValidationError: if the normalized value is not exactly 5 digits
    """
    code = normalize_postal_code(raw)
    if len(code) != POSTAL_CODE_LENGTH:
        raise ValidationError("Please enter a valid 5-digit ZIP code", field="zip")
    return code


EMAIL_PATTERN = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")


def is_email(value) -> bool:
    return bool(value) and isinstance(value, str) and bool(EMAIL_PATTERN.fullmatch(value))


def parse_email(value) -> str:
    """Check the conservative local@domain.tld shape. Whitespace anywhere is rejected."""
    if not is_email(value):
        raise ValidationError("Invalid email address", field="email")
    return value
