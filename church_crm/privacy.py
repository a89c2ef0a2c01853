"""Normalization and masking helpers for member contact data."""

from __future__ import annotations

import re
from typing import Any


_NON_DIGIT = re.compile(r"\D")
_GMAIL_DOMAINS = ("gmail.com", "googlemail.com")


def digits_only(value: str | None) -> str:
    if value is None:
        return ""
    return _NON_DIGIT.sub("", value)


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def normalize_phone(phone: str | None) -> str | None:
    """Return the phone number in +<country><number> form, or None when too short."""

    digits = digits_only(phone)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) >= 10:
        return f"+{digits}"
    return None


def email_variations(email: str) -> list[str]:
    """Common spellings of the same mailbox (gmail dots, plus tags, googlemail)."""

    cleaned = email.strip().lower()
    if "@" not in cleaned:
        return [cleaned]

    local, domain = cleaned.split("@", 1)
    variations = {cleaned}
    if domain not in _GMAIL_DOMAINS or not local:
        return sorted(variations)

    locals_ = {local, local.replace(".", "")}
    if local.find("+") > 0:
        base = local.split("+", 1)[0]
        locals_.update({base, base.replace(".", "")})

    for candidate in locals_:
        for gmail_domain in _GMAIL_DOMAINS:
            variations.add(f"{candidate}@{gmail_domain}")

    return sorted(variations)


def mask_email(email: str | None) -> str:
    if not email or "@" not in email:
        return ""
    local, domain = email.split("@", 1)
    if len(local) <= 3:
        return f"{'*' * len(local)}@{domain}"
    stars = "*" * min(len(local) - 2, 4)
    return f"{local[0]}{stars}{local[-1]}@{domain}"


def mask_phone(phone: str | None) -> str:
    digits = digits_only(phone)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return f"***-***-{digits[-4:]}" if len(digits) >= 4 else ""
    return f"({digits[:3]}) ***-{digits[-4:]}"


def display_mask_email(email: str | None) -> str:
    """Mask used in admin screens: the first two characters stay visible."""

    if not email or "@" not in email:
        return ""
    local, domain = email.split("@", 1)
    if len(local) <= 2:
        return f"{local}@{domain}"
    return f"{local[:2]}{'*' * (len(local) - 2)}@{domain}"


def display_mask_phone(phone: str | None) -> str:
    digits = digits_only(phone)
    if len(digits) == 11:
        return f"+{digits[0]} ({digits[1:4]}) ***-{digits[-4:]}"
    if len(digits) < 4:
        return ""
    return f"***-***-{digits[-4:]}"


def sanitize_recognition_input(raw: dict[str, Any]) -> dict[str, str | None]:
    """Trim free text, lowercase email, keep digits for phone and zip code."""

    def text(key: str) -> str | None:
        value = raw.get(key)
        if value is None:
            return None
        stripped = str(value).strip()
        return stripped or None

    zip_digits = digits_only(text("zip_code"))[:10]
    phone_digits = digits_only(text("phone"))

    return {
        "first_name": text("first_name"),
        "last_name": text("last_name"),
        "email": normalize_email(text("email")),
        "phone": phone_digits or None,
        "address": text("address"),
        "city": text("city"),
        "state": text("state"),
        "zip_code": zip_digits or None,
        "date_of_birth": text("date_of_birth"),
    }
