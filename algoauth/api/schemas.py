from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after dropping zero-width and bidi-override characters."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


class ErrorBody(BaseModel):
    """Error payload: human message, HTTP status, and a stable machine code."""

    message: str
    statusCode: int
    code: Optional[str] = None
    details: Optional[Any] = None


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorBody


class Envelope(BaseModel):
    """Success envelope returned by every auth route."""

    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
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


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{1,20}$")


def _validate_username(value: str) -> str:
    """Usernames are 1-20 letters, digits or underscores."""
    value = _normalize_unicode(value.strip())
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must be 1-20 characters of letters, numbers and underscores"
        )
    return value


_PASSWORD_SPECIALS = "@$!%*?&"
_PASSWORD_ALLOWED = re.compile(r"^[A-Za-z\d@$!%*?&]+$")


def _validate_password_strength(value: str) -> str:
    """At least 8 chars with a lowercase, an uppercase, a digit and one of @$!%*?&."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not _PASSWORD_ALLOWED.match(value):
        raise ValueError(
            f"password may only contain letters, digits and {_PASSWORD_SPECIALS}"
        )
    if not (
        re.search(r"[a-z]", value)
        and re.search(r"[A-Z]", value)
        and re.search(r"\d", value)
        and any(c in _PASSWORD_SPECIALS for c in value)
    ):
        raise ValueError(
            "password must contain an uppercase letter, a lowercase letter, "
            f"a number and one of {_PASSWORD_SPECIALS}"
        )
    return value


class RegisterRequest(BaseModel):
    email: str
    username: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)
    username: Optional[str] = Field(default=None, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: Optional[str]) -> Optional[str]:
        # Lookups only: a malformed email simply matches nobody.
        if value is None:
            return None
        return _normalize_unicode(value.strip().lower()) or None

    @model_validator(mode="after")
    def _require_identifier(self):
        if not self.email and not self.username:
            raise ValueError("email or username is required")
        return self


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., alias="refreshToken", min_length=1)


class LogoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(..., alias="currentPassword", min_length=1)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _reject_same_password(self):
        if self.current_password == self.new_password:
            raise ValueError("new password must differ from the current password")
        return self
