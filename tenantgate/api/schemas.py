from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_PASSWORD_LENGTH = 128
MIN_PASSWORD_LENGTH = 8


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class Envelope(BaseModel):
    """Success envelope: ``{"success": true, "data": ...}``."""

    success: bool = True
    data: Optional[Any] = None


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: str
    code: str
    requestId: Optional[str] = None


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
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


def _validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(_CamelModel):
    # Not format-checked: a malformed address is just another failed login
    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=1024)


class RegisterRequest(_CamelModel):
    email: str
    password: str
    invite_key: str = Field(..., alias="inviteKey", min_length=1, max_length=256)
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SwitchClientRequest(_CamelModel):
    client_id: str = Field(..., alias="clientId", min_length=1, max_length=128)

    @field_validator("client_id")
    @classmethod
    def _strip_client_id(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("clientId is required")
        return stripped


class JoinClientRequest(_CamelModel):
    client_id: Optional[str] = Field(default=None, alias="clientId", max_length=128)
    client_slug: Optional[str] = Field(default=None, alias="clientSlug", max_length=128)

    @model_validator(mode="after")
    def _require_one_target(self):
        self.client_id = (self.client_id or "").strip() or None
        self.client_slug = (self.client_slug or "").strip() or None
        if not self.client_id and not self.client_slug:
            raise ValueError("clientId or clientSlug is required")
        return self


class ChangePasswordRequest(_CamelModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(
        ..., alias="currentPassword", min_length=1, max_length=MAX_PASSWORD_LENGTH
    )
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)
