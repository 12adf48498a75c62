"""Input normalization for identifiers, passwords and OTP destinations.

Everything here raises ValidationError before any store is touched.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional

from studyauth.service.errors import ValidationError
from studyauth.storage.models import OTPChannel

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME = re.compile(r"^[a-z0-9](?:[a-z0-9._]{1,28}[a-z0-9])$")
_E164 = re.compile(r"^\+[1-9]\d{7,14}$")


def normalize_email(value: Optional[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("email is required", detail={"field": "email"})
    email = unicodedata.normalize("NFKC", value).strip().lower()
    if len(email) > 254 or email.count("@") != 1:
        raise ValidationError("invalid email address", detail={"field": "email"})
    local, domain = email.split("@", 1)
    if not local or len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValidationError("invalid email address", detail={"field": "email"})
    if local.startswith(".") or local.endswith(".") or ".." in local:
        raise ValidationError("invalid email address", detail={"field": "email"})
    labels = domain.split(".")
    if len(labels) < 2 or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels):
        raise ValidationError("invalid email address", detail={"field": "email"})
    return email


def normalize_username(value: Optional[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("username is required", detail={"field": "username"})
    username = unicodedata.normalize("NFKC", value).strip().lower()
    if not _USERNAME.match(username):
        raise ValidationError(
            "username must be 3-30 characters of letters, digits, '.' or '_'",
            detail={"field": "username"},
        )
    return username


def validate_password(value: Optional[str], *, min_length: int = 8) -> str:
    """Check password policy; the value is returned untouched."""
    if not isinstance(value, str) or not value:
        raise ValidationError("password is required", detail={"field": "password"})
    if len(value) < min_length:
        raise ValidationError(
            f"password must be at least {min_length} characters",
            detail={"field": "password"},
        )
    if len(value) > 1024:
        raise ValidationError("password is too long", detail={"field": "password"})
    if not any(ch.isalpha() for ch in value) or not any(ch.isdigit() for ch in value):
        raise ValidationError(
            "password must contain at least one letter and one digit",
            detail={"field": "password"},
        )
    return value


def normalize_phone(value: Optional[str], *, default_country_code: Optional[str] = None) -> str:
    """Return ``value`` in E.164 form.

    Numbers already carrying ``+`` keep their country code. Bare numbers that
    start with ``default_country_code`` and are longer than a national number
    get a ``+``; other bare numbers get ``+<default_country_code>`` after any
    trunk ``0`` is dropped. Without a configured default, bare numbers are
    rejected.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("phone is required", detail={"field": "phone"})
    raw = value.strip()
    has_plus = raw.startswith("+") or raw.startswith("00")
    digits = re.sub(r"\D", "", raw)
    if raw.startswith("00"):
        digits = digits[2:]
    if has_plus:
        candidate = f"+{digits}"
    elif default_country_code:
        national = digits
        if national.startswith(default_country_code) and len(national) > 10:
            candidate = f"+{national}"
        else:
            candidate = f"+{default_country_code}{national.lstrip('0')}"
    else:
        raise ValidationError(
            "phone number must include a country code", detail={"field": "phone"}
        )
    if not _E164.match(candidate):
        raise ValidationError("invalid phone number", detail={"field": "phone"})
    return candidate


def resolve_destination(
    *,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    default_country_code: Optional[str] = None,
) -> tuple[OTPChannel, str]:
    """Exactly one of ``email`` or ``phone``; returns the channel and normalized value."""
    if bool(email) == bool(phone):
        raise ValidationError(
            "provide exactly one of email or phone", detail={"fields": ["email", "phone"]}
        )
    if email:
        return OTPChannel.EMAIL, normalize_email(email)
    return OTPChannel.PHONE, normalize_phone(phone, default_country_code=default_country_code)


def normalize_otp_code(value: Optional[str], *, length: int) -> str:
    code = (value or "").strip() if isinstance(value, str) else ""
    if len(code) != length or not code.isdigit():
        raise ValidationError(
            f"code must be {length} digits", detail={"field": "code"}
        )
    return code
