"""
Field validators for permit data collection.

Each validator takes already-sanitized text and returns a ValidationResult
with the normalized value on success or a short error on failure.
"""
import re
from typing import Optional, Callable
from dataclasses import dataclass
from datetime import datetime

MAX_NAME_LENGTH = 100
MAX_EMAIL_LENGTH = 100
MAX_MAKE_LENGTH = 30
MAX_MODEL_LENGTH = 40
MAX_COLOR_LENGTH = 30
MIN_ADDRESS_LENGTH = 10
MAX_ADDRESS_LENGTH = 200
MIN_SERIAL_LENGTH = 5
MAX_SERIAL_LENGTH = 25

NAME_PATTERN = re.compile(r"^[A-Za-zÁÉÍÓÚÜÑáéíóúüñ' .-]+$")
CURP_RFC_PATTERN = re.compile(r"^[A-Z0-9]{10,18}$")
EMAIL_PATTERN = re.compile(r"^[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}$")
VEHICLE_TEXT_PATTERN = re.compile(r"^[A-Za-z0-9ÁÉÍÓÚÜÑáéíóúüñ .&/-]+$")
SERIAL_PATTERN = re.compile(r"^[A-Z0-9-]+$")
YEAR_PATTERN = re.compile(r"^\d{4}$")
REPEATED_CHAR_PATTERN = re.compile(r"(.)\1{4,}")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one field value."""
    valid: bool
    value: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: str) -> "ValidationResult":
        return cls(valid=True, value=value)

    @classmethod
    def fail(cls, error: str) -> "ValidationResult":
        return cls(valid=False, error=error)


Validator = Callable[[str], ValidationResult]


def _filler(value: str) -> bool:
    return bool(REPEATED_CHAR_PATTERN.search(value))


def validate_full_name(value: str) -> ValidationResult:
    if len(value) < 3 or len(value) > MAX_NAME_LENGTH:
        return ValidationResult.fail(f"Name must be between 3 and {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        return ValidationResult.fail("Name may only contain letters and spaces")
    if len(value.split()) < 2:
        return ValidationResult.fail("Please enter at least first name and last name")
    if _filler(value):
        return ValidationResult.fail("Name looks like filler text")
    return ValidationResult.ok(" ".join(word.capitalize() for word in value.split()))


def validate_curp_rfc(value: str) -> ValidationResult:
    normalized = value.upper().replace(" ", "")
    if not CURP_RFC_PATTERN.match(normalized):
        return ValidationResult.fail("CURP or RFC must be 10 to 18 letters and digits")
    if _filler(normalized):
        return ValidationResult.fail("CURP or RFC looks like filler text")
    return ValidationResult.ok(normalized)


def validate_email(value: str) -> ValidationResult:
    normalized = value.lower().replace(" ", "")
    if len(normalized) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(normalized):
        return ValidationResult.fail("Email address is not valid")
    if _filler(normalized):
        return ValidationResult.fail("Email address looks like filler text")
    return ValidationResult.ok(normalized)


def _vehicle_text(value: str, label: str, max_length: int) -> ValidationResult:
    if not value or len(value) > max_length:
        return ValidationResult.fail(f"{label} must be between 1 and {max_length} characters")
    if not VEHICLE_TEXT_PATTERN.match(value):
        return ValidationResult.fail(f"{label} contains characters that are not allowed")
    if _filler(value):
        return ValidationResult.fail(f"{label} looks like filler text")
    return ValidationResult.ok(value.upper())


def validate_make(value: str) -> ValidationResult:
    return _vehicle_text(value, "Make", MAX_MAKE_LENGTH)


def validate_model(value: str) -> ValidationResult:
    return _vehicle_text(value, "Model", MAX_MODEL_LENGTH)


def validate_color(value: str) -> ValidationResult:
    # "rojo/negro" is stored as "rojo y negro"
    value = re.sub(r"\s*/\s*", " y ", value)
    return _vehicle_text(value, "Color", MAX_COLOR_LENGTH)


def validate_model_year(value: str, current_year: Optional[int] = None) -> ValidationResult:
    current_year = current_year or datetime.utcnow().year
    if not YEAR_PATTERN.match(value):
        return ValidationResult.fail("Year must have 4 digits")
    year = int(value)
    if year < 1900 or year > current_year + 1:
        return ValidationResult.fail(f"Year must be between 1900 and {current_year + 1}")
    return ValidationResult.ok(value)


def _serial(value: str, label: str) -> ValidationResult:
    normalized = value.upper()
    if " " in normalized:
        return ValidationResult.fail(f"{label} must not contain spaces")
    if not MIN_SERIAL_LENGTH <= len(normalized) <= MAX_SERIAL_LENGTH:
        return ValidationResult.fail(
            f"{label} must be between {MIN_SERIAL_LENGTH} and {MAX_SERIAL_LENGTH} characters"
        )
    if not SERIAL_PATTERN.match(normalized):
        return ValidationResult.fail(f"{label} may only contain letters, digits and dashes")
    if _filler(normalized):
        return ValidationResult.fail(f"{label} looks like filler text")
    return ValidationResult.ok(normalized)


def validate_vin(value: str) -> ValidationResult:
    return _serial(value, "Serial number")


def validate_engine_number(value: str) -> ValidationResult:
    return _serial(value, "Engine number")


def validate_address(value: str) -> ValidationResult:
    if not MIN_ADDRESS_LENGTH <= len(value) <= MAX_ADDRESS_LENGTH:
        return ValidationResult.fail(
            f"Address must be between {MIN_ADDRESS_LENGTH} and {MAX_ADDRESS_LENGTH} characters"
        )
    if not any(ch.isdigit() for ch in value):
        return ValidationResult.fail("Address must include a street number")
    if _filler(value):
        return ValidationResult.fail("Address looks like filler text")
    return ValidationResult.ok(value)
