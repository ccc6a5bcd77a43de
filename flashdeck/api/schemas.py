from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flashdeck.service.account import check_password_complexity

# Stable error codes rendered in the error envelope
ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "UNAUTHORIZED",
    "INVALID_SESSION",
    "INVALID_CREDENTIALS",
    "FORBIDDEN",
    "SESSION_MISMATCH",
    "NOT_FOUND",
    "METHOD_NOT_ALLOWED",
    "CONFLICT",
    "ALREADY_DELETED",
    "EMAIL_ALREADY_EXISTS",
    "RATE_LIMIT_EXCEEDED",
    "DATABASE_ERROR",
    "PASSWORD_UPDATE_ERROR",
    "UPDATE_ERROR",
    "LOGOUT_ERROR",
    "REGISTRATION_ERROR",
    "PROFILE_CREATION_ERROR",
    "INTERNAL_SERVER_ERROR",
})


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None  # object, array, or omitted

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(ERROR_CODES))}"
            )
        return value


class ErrorEnvelope(BaseModel):
    error: ErrorBody

    def to_content(self) -> dict:
        return self.model_dump(exclude_none=True)


class Envelope(BaseModel):
    """Success envelope: every 2xx body is ``{"data": ...}``."""

    data: Any = None


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if not normalized:
        raise ValueError("email is required")
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email format")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=8, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=8, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password_complexity(cls, value: str) -> str:
        return check_password_complexity(value)


class UserResponse(BaseModel):
    id: str
    email: Optional[str] = None


class LoginResponse(BaseModel):
    user: UserResponse


class SessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user: UserResponse
    expires_at: datetime = Field(..., serialization_alias="expiresAt")


class MessageResponse(BaseModel):
    message: str
