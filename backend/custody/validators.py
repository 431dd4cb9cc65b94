import re

from .exceptions import ValidationError

# Indian mobile numbers: 10 digits, first digit 6-9.
MOBILE_PATTERN = re.compile(r"^[6-9]\d{9}$")


def normalize_mobile(value: str | None, field_name: str = "mobile") -> str:
    """Strip spaces, dashes and a +91 country prefix, then check the 10 digit pattern."""
    if not value:
        raise ValidationError(f"{field_name} is required")
    digits = re.sub(r"[\s-]", "", str(value))
    if digits.startswith("+91"):
        digits = digits[3:]
    if not MOBILE_PATTERN.match(digits):
        raise ValidationError(f"{field_name} must be 10 digits starting with 6-9")
    return digits


def validate_positive_int(value, field_name: str, minimum: int = 1, maximum: int | None = None) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer")
    if number != value and str(number) != str(value).strip():
        raise ValidationError(f"{field_name} must be an integer")
    if number < minimum:
        raise ValidationError(f"{field_name} must be at least {minimum}")
    if maximum is not None and number > maximum:
        raise ValidationError(f"{field_name} cannot exceed {maximum}")
    return number
