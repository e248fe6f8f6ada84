from __future__ import annotations

import re
import unicodedata

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
# E.164: leading plus, country code without zero, up to 15 digits total
_PHONE_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")


def normalize_email(value: str) -> str:
    """Lower-case, NFKC-normalise and shape-check an email address."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def normalize_phone(value: str) -> str:
    """Strip separators and require an E.164 number such as ``+5215512345678``."""
    if not isinstance(value, str):
        raise ValueError("phone must be a string")
    compact = re.sub(r"[\s\-().]", "", value)
    if not _PHONE_PATTERN.match(compact):
        raise ValueError("phone must be in E.164 format")
    return compact
