from __future__ import annotations

import re
import unicodedata
from typing import Optional, Tuple

from farmauth.service.errors import ValidationError
from farmauth.storage.models import Channel

_PHONE_SEPARATORS = re.compile(r"[\s\-.()]")
_PHONE_DIGITS = re.compile(r"^\+?\d{7,15}$")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_phone(value: str) -> str:
    cleaned = _PHONE_SEPARATORS.sub("", unicodedata.normalize("NFKC", value or ""))
    if not _PHONE_DIGITS.match(cleaned):
        raise ValidationError("invalid phone number", detail={"field": "phone"})
    return cleaned


def normalize_email(value: str) -> str:
    normalized = unicodedata.normalize("NFKC", (value or "").strip().lower())
    if len(normalized) > 254:
        raise ValidationError("email address too long", detail={"field": "email"})
    local, sep, domain = normalized.partition("@")
    labels = domain.split(".")
    if (
        not sep
        or not local
        or not _EMAIL_LOCAL_PART.match(local)
        or len(labels) < 2
        or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels)
    ):
        raise ValidationError("invalid email address", detail={"field": "email"})
    return normalized


def channel_for(identifier: str) -> Channel:
    return Channel.EMAIL if "@" in identifier else Channel.PHONE


def normalize_identifier(value: Optional[str]) -> Tuple[str, Channel]:
    """Canonicalise a phone or email so challenges and lookups share one key."""
    raw = (value or "").strip()
    if not raw:
        raise ValidationError("identifier is required", detail={"field": "identifier"})
    channel = channel_for(raw)
    if channel == Channel.EMAIL:
        return normalize_email(raw), channel
    return normalize_phone(raw), channel
