from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

# Audit entries are a rolling 24h security trace
AUDIT_RETENTION_SECONDS = 86400


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    USER_DELETED = "USER_DELETED"
    USER_REGISTERED = "USER_REGISTERED"
    SESSION_REVOKED = "SESSION_REVOKED"
    SETTINGS_CHANGED = "SETTINGS_CHANGED"
    SYSTEM_ALERT = "SYSTEM_ALERT"


@dataclass
class Admin:
    id: str
    email: str
    password_hash: Optional[str] = None
    totp_secret: Optional[str] = None
    totp_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, password_hash: Optional[str] = None) -> "Admin":
        return cls(id=str(uuid.uuid4()), email=email, password_hash=password_hash)


@dataclass
class Session:
    """One authenticated device for one administrator."""

    id: str
    admin_id: str
    email: str
    fingerprint: str
    device_key_kind: str
    ip: str
    user_agent: str
    device_name: str
    created_at: datetime
    last_seen: datetime
    is_active: bool = True

    @classmethod
    def new(
        cls,
        admin_id: str,
        email: str,
        fingerprint: str,
        *,
        device_key_kind: str = "fingerprint",
        ip: str = "unknown",
        user_agent: str = "",
        device_name: str = "Unknown Device",
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            admin_id=admin_id,
            email=email,
            fingerprint=fingerprint,
            device_key_kind=device_key_kind,
            ip=ip,
            user_agent=user_agent,
            device_name=device_name,
            created_at=now,
            last_seen=now,
            is_active=True,
        )


@dataclass
class AuditEntry:
    id: str
    admin_id: str
    email: str
    action: AuditAction
    details: str
    ip: str
    timestamp: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls,
        action: AuditAction,
        admin_id: str,
        email: str,
        details: str = "",
        ip: str = "unknown",
        *,
        now: Optional[datetime] = None,
    ) -> "AuditEntry":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            admin_id=admin_id,
            email=email,
            action=AuditAction(action),
            details=details or "",
            ip=ip or "unknown",
            timestamp=now,
            expires_at=now + timedelta(seconds=AUDIT_RETENTION_SECONDS),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "admin_id": self.admin_id,
            "email": self.email,
            "action": self.action.value,
            "details": self.details,
            "ip": self.ip,
            "timestamp": self.timestamp.isoformat(),
        }


SYSTEM_SETTINGS_FIELDS = (
    "maintenance_mode",
    "locale",
    "timezone",
    "domain_whitelist_enabled",
    "short_session_timeout",
)


@dataclass
class SystemSettings:
    maintenance_mode: bool = False
    locale: str = "en-us"
    timezone: str = "utc"
    domain_whitelist_enabled: bool = True
    short_session_timeout: bool = False
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat()
        return data

    def public_view(self) -> Dict[str, Any]:
        return {
            "maintenance_mode": self.maintenance_mode,
            "locale": self.locale,
            "timezone": self.timezone,
            "domain_whitelist_enabled": self.domain_whitelist_enabled,
        }
