"""Normalization of contact details mirrored from the entity store."""

import re
from typing import Optional

E164_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize phone to E.164 format (+15551234567).

    Accepts:
    - 10 digits: 5551234567 → +15551234567 (US)
    - 11 digits starting with 1: 15551234567 → +15551234567
    - Any E.164 number: +447700900123

    Raises:
        ValueError: If the number cannot be expressed in E.164
    """
    if not phone:
        return None

    cleaned = phone.strip()
    if cleaned.startswith("+"):
        candidate = "+" + re.sub(r"\D", "", cleaned[1:])
        if E164_PATTERN.match(candidate):
            return candidate
        raise ValueError(f"Invalid phone number '{phone}'.")

    digits = re.sub(r"\D", "", cleaned)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"

    raise ValueError(f"Invalid phone number '{phone}'. Use E.164 or 10-digit US format.")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lowercase and trim; None if empty."""
    if not email:
        return None
    email = email.strip().lower()
    return email or None


def normalize_name(name: Optional[str]) -> Optional[str]:
    """Collapse internal whitespace; None if empty."""
    if not name:
        return None
    collapsed = " ".join(name.split())
    return collapsed or None
