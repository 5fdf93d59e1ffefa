from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "legacy_session",
    "session_revoked",
    "session_expired",
    "invalid_password",
    "forbidden",
    "not_found",
    "validation_error",
    "precondition_failed",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


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


class _EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class InitRequest(_EmailRequest):
    pass


class InitResponse(BaseModel):
    status: Literal["setup_needed", "verify_needed"]


class SetupRequest(_EmailRequest):
    pass


class SetupResponse(BaseModel):
    secret: str
    otpauth_url: str
    qr_code: str = Field(..., description="data:image/png;base64 rendering of otpauth_url")


class VerifyRequest(_EmailRequest):
    code: str = Field(..., max_length=10)
    fingerprint_id: Optional[str] = Field(default=None, max_length=256)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    session_id: str


class LogoutResponse(BaseModel):
    logged_out: bool = True


class SessionResponse(BaseModel):
    id: str
    email: str
    device_name: str
    device_key_kind: str
    ip: str
    user_agent: str
    created_at: datetime
    last_seen: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class RevokeRequest(BaseModel):
    session_id: str = Field(..., max_length=128)
    # Optional so a missing password is reported as a 400, not a schema error
    password: Optional[str] = Field(default=None, max_length=1024)


class RevokeResponse(BaseModel):
    revoked: bool = True
    session_id: str


class AuditEntryResponse(BaseModel):
    id: str
    admin_id: str
    email: str
    action: str
    details: str
    ip: str
    timestamp: datetime


class AuditLogResponse(BaseModel):
    items: List[AuditEntryResponse]


class SystemSettingsResponse(BaseModel):
    maintenance_mode: bool
    locale: str
    timezone: str
    domain_whitelist_enabled: bool
    short_session_timeout: bool
    updated_at: datetime


class PublicSettingsResponse(BaseModel):
    maintenance_mode: bool
    locale: str
    timezone: str
    domain_whitelist_enabled: bool


class SettingsUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    maintenance_mode: Optional[bool] = None
    locale: Optional[str] = Field(default=None, max_length=16)
    timezone: Optional[str] = Field(default=None, max_length=64)
    domain_whitelist_enabled: Optional[bool] = None
    short_session_timeout: Optional[bool] = None

    @field_validator("locale", "timezone")
    @classmethod
    def _lowercase(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        stripped = value.strip().lower()
        if not stripped:
            raise ValueError("value must not be blank")
        return stripped
