from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type

from mailshare_admin.config import Settings
from mailshare_admin.logging import get_logger
from mailshare_admin.service import totp
from mailshare_admin.service.audit import AuditFanout
from mailshare_admin.service.errors import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    PreconditionFailedError,
)
from mailshare_admin.service.sessions import (
    SessionMetadata,
    SessionRegistry,
    derive_device_name,
    resolve_device_key,
)
from mailshare_admin.service.tokens import IssuedToken, TokenIssuer
from mailshare_admin.storage.common import normalize_email
from mailshare_admin.storage.errors import ConstraintViolation
from mailshare_admin.storage.models import (
    Admin,
    AuditAction,
    AuditEntry,
    Session,
    SystemSettings,
)

logger = get_logger(__name__)


class AdminStore(Protocol):
    """Persistence contract shared by MemoryStore and PostgresStore."""

    def count_admins(self) -> int: ...

    def create_admin(self, email: str, password_hash: Optional[str] = None) -> Admin: ...

    def get_admin(self, admin_id: str) -> Optional[Admin]: ...

    def get_admin_by_email(self, email: str) -> Optional[Admin]: ...

    def set_admin_password(self, admin_id: str, password_hash: str) -> None: ...

    def set_admin_totp(
        self, admin_id: str, secret: Optional[str], *, enabled: bool
    ) -> Admin: ...

    def enable_admin_totp(self, admin_id: str) -> None: ...

    def delete_all_admins(self) -> int: ...

    def upsert_session(
        self,
        admin_id: str,
        email: str,
        fingerprint: str,
        *,
        device_key_kind: str,
        ip: str,
        user_agent: str,
        device_name: str,
        now: Optional[datetime] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: Optional[datetime] = None) -> bool: ...

    def deactivate_session(self, session_id: str) -> bool: ...

    def list_active_sessions(self) -> List[Session]: ...

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry: ...

    def list_audit_entries(
        self, limit: int = 100, now: Optional[datetime] = None
    ) -> List[AuditEntry]: ...

    def purge_expired_audit_entries(self, now: Optional[datetime] = None) -> int: ...

    def get_system_settings(self) -> SystemSettings: ...

    def update_system_settings(self, changes: Dict[str, Any]) -> SystemSettings: ...

    def verify_connection(self) -> None: ...


class IdentityStatus(str, Enum):
    SETUP_NEEDED = "setup_needed"
    VERIFY_NEEDED = "verify_needed"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class EnrollmentResult:
    secret: str
    otpauth_url: str
    qr_code: str


@dataclass(frozen=True)
class LoginResult:
    token: IssuedToken
    session: Session
    admin: Admin


class AdminAuthService:
    """Single-administrator identity, TOTP enrollment and login."""

    def __init__(
        self,
        store: AdminStore,
        settings: Settings,
        audit: AuditFanout,
        registry: SessionRegistry,
        tokens: TokenIssuer,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.registry = registry
        self.tokens = tokens
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self.logger = logger

    @property
    def password_hasher(self) -> PasswordHasher:
        return self._pwd_hasher

    async def check_identity(self, email: str, ip: str = "unknown") -> IdentityStatus:
        normalized = normalize_email(email)
        if self.store.count_admins() == 0:
            try:
                admin = self.store.create_admin(normalized)
            except ConstraintViolation:
                # Lost the race to another first-admin request
                self.logger.warning("admin_bootstrap_race_lost", email=normalized)
            else:
                self.logger.info("admin_registered", admin_id=admin.id)
                await self.audit.record(
                    AuditAction.USER_REGISTERED,
                    admin.id,
                    admin.email,
                    "First administrator registered",
                    ip,
                )
                return IdentityStatus.SETUP_NEEDED

        admin = self.store.get_admin_by_email(normalized)
        if admin is None:
            self.logger.warning("admin_identity_forbidden", email=normalized)
            return IdentityStatus.FORBIDDEN
        if not admin.totp_enabled:
            return IdentityStatus.SETUP_NEEDED
        return IdentityStatus.VERIFY_NEEDED

    def begin_enrollment(self, email: str) -> EnrollmentResult:
        """Issue a new TOTP secret for an administrator who has not confirmed one.

        Once a code has been verified the secret is locked; replacing it
        requires the bootstrap tool's reset.
        """
        admin = self._require_admin(email)
        if admin.totp_enabled:
            self.logger.warning("totp_reenrollment_refused", admin_id=admin.id)
            raise ForbiddenError(
                "TOTP is already set up for this administrator",
                detail={"status": "verify_needed"},
            )
        secret = totp.generate_secret()
        # Replaces any earlier unconfirmed secret
        self.store.set_admin_totp(admin.id, secret, enabled=False)
        uri = totp.provisioning_uri(secret, admin.email, self.settings.totp_issuer)
        self.logger.info("totp_enrollment_started", admin_id=admin.id)
        return EnrollmentResult(secret=secret, otpauth_url=uri, qr_code=totp.qr_data_url(uri))

    def verify_code(self, email: str, code: str) -> bool:
        admin = self._require_admin(email)
        if not admin.totp_secret:
            raise PreconditionFailedError(
                "TOTP is not set up for this administrator",
                detail={"status": "setup_needed"},
            )
        if not totp.verify(admin.totp_secret, code):
            self.logger.warning("totp_code_rejected", admin_id=admin.id)
            return False
        if not admin.totp_enabled:
            self.store.enable_admin_totp(admin.id)
            self.logger.info("totp_enabled", admin_id=admin.id)
        return True

    async def login(
        self,
        email: str,
        code: str,
        *,
        fingerprint: Optional[str] = None,
        ip: str = "unknown",
        user_agent: str = "",
    ) -> LoginResult:
        if not self.verify_code(email, code):
            raise BadRequestError("invalid verification code")
        admin = self._require_admin(email)
        device_name = derive_device_name(user_agent)
        session = self.registry.upsert_session(
            admin.id,
            resolve_device_key(fingerprint, ip),
            SessionMetadata(
                email=admin.email, ip=ip, user_agent=user_agent, device_name=device_name
            ),
        )
        issued = self.tokens.issue(admin, session)
        await self.audit.record(
            AuditAction.LOGIN,
            admin.id,
            admin.email,
            f"TOTP verification from {device_name}",
            ip,
        )
        await self.audit.notify_session("login", admin.email, session_id=session.id)
        self.logger.info("admin_login", admin_id=admin.id, session_id=session.id)
        return LoginResult(token=issued, session=session, admin=admin)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def set_password(self, email: str, password: str) -> None:
        if not password:
            raise BadRequestError("password is required")
        admin = self._require_admin(email)
        self.store.set_admin_password(admin.id, self._hash_password(password))
        self.logger.info("admin_password_set", admin_id=admin.id)

    def _require_admin(self, email: str) -> Admin:
        admin = self.store.get_admin_by_email(email)
        if admin is None:
            raise NotFoundError("administrator not found")
        return admin
