# /app/utils/phone.py

import re

_SEPARATORS = re.compile(r"[\s\-().]")


def normalize_phone(phone: str) -> str:
    """
    Normalizes a phone number used as a channel address.

    Strips separators and prefixes "+" for international numbers, so the same
    contact always maps to the same session key. Returns "" for empty input.
    """
    if not phone or not isinstance(phone, str):
        return ""
    normalized = _SEPARATORS.sub("", phone.strip())
    if not normalized.startswith("+") and len(normalized) > 10:
        normalized = "+" + normalized
    return normalized


def whatsapp_recipient(phone: str) -> str:
    """WhatsApp Cloud API recipient format: digits with a leading '+'."""
    clean_phone = re.sub(r"[^\d+]", "", phone or "")
    if not clean_phone.startswith("+"):
        clean_phone = "+" + clean_phone.lstrip("+")
    return clean_phone
