"""
Identity key helpers.

Sessions are keyed by a normalized phone number so that the same person
writing from "+52 55 1234 5678" and "5512345678" lands on one session.
"""
import re
import logging
from typing import Optional

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")
_VALID_IDENTITY = re.compile(r"^52\d{10}$|^521\d{10}$")


def normalize_identity(raw: Optional[str]) -> Optional[str]:
    """
    Normalize a phone identity to 52XXXXXXXXXX (or 521XXXXXXXXXX for mobiles).

    Args:
        raw: Phone number in any common format

    Returns:
        Normalized digits, or None for empty input. Numbers that cannot be
        normalized are returned as their digits with a warning logged.
    """
    if not raw:
        return None

    cleaned = _NON_DIGITS.sub("", str(raw))
    if not cleaned:
        return None

    if len(cleaned) == 10:
        cleaned = "52" + cleaned
    elif cleaned.startswith("1") and len(cleaned) == 11:
        cleaned = "52" + cleaned[1:]

    if not _VALID_IDENTITY.match(cleaned):
        logger.warning(
            f"Identity normalization produced unexpected format for {mask_identity(cleaned)}",
            extra={"extra_fields": {"event": "identity_unexpected_format", "length": len(cleaned)}}
        )

    return cleaned


def mask_identity(identity: Optional[str]) -> str:
    """Mask an identity for logging (first 5 characters kept)."""
    if not identity:
        return "unknown"
    return identity[:5] + "*" * max(len(identity) - 5, 0)
