from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from mailshare_admin.logging import get_logger
from mailshare_admin.service.audit import AuditFanout
from mailshare_admin.service.errors import (
    AuthenticationError,
    LegacySessionError,
    SessionExpiredError,
    SessionRevokedError,
)
from mailshare_admin.service.policy import InactivityPolicy
from mailshare_admin.service.sessions import SessionRegistry
from mailshare_admin.service.tokens import TokenIssuer, extract_bearer
from mailshare_admin.storage.models import AuditAction, utcnow

logger = get_logger(__name__)

SESSION_ENDED_MESSAGE = "session ended, please re-authenticate"


@dataclass(frozen=True)
class AdminContext:
    admin_id: str
    email: str
    session_id: str


class RequestGate:
    """Authenticates every admin request against its bound session.

    Order matters: the token is checked first, then the session binding,
    then inactivity, and only a request that passes all of those refreshes
    ``last_seen``. Background polls skip the refresh so an idle dashboard
    does not keep a session alive.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        tokens: TokenIssuer,
        policy: InactivityPolicy,
        audit: AuditFanout,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.registry = registry
        self.tokens = tokens
        self.policy = policy
        self.audit = audit
        self._clock = clock or utcnow

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        ip: str = "unknown",
        background: bool = False,
    ) -> AdminContext:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        payload = self.tokens.verify(token)

        session_id = payload.get("sid")
        if not session_id:
            logger.warning("auth_legacy_token", admin_id=payload.get("sub"))
            raise LegacySessionError(
                "token is not bound to a session, please re-authenticate"
            )

        session = self.registry.get(session_id)
        if session is None or not session.is_active:
            logger.warning(
                "auth_session_revoked",
                session_id=session_id,
                admin_id=payload.get("sub"),
                found=session is not None,
            )
            raise SessionRevokedError(SESSION_ENDED_MESSAGE)

        threshold = self.policy.current_threshold()
        elapsed = self._clock() - session.last_seen
        if elapsed > threshold.duration:
            await self._expire(session, threshold.label, ip)
            raise SessionExpiredError(SESSION_ENDED_MESSAGE)

        if not background:
            self.registry.touch(session_id)

        return AdminContext(
            admin_id=payload["sub"],
            email=payload.get("email") or session.email,
            session_id=session_id,
        )

    async def _expire(self, session, label: str, ip: str) -> None:
        self.registry.deactivate(session.id)
        logger.warning(
            "auth_session_expired",
            session_id=session.id,
            admin_id=session.admin_id,
            threshold=label,
        )
        await self.audit.record(
            AuditAction.LOGOUT,
            session.admin_id,
            session.email,
            f"Session timed out after {label} of inactivity",
            ip,
        )
        await self.audit.notify_session(
            "logout", session.email, reason="timeout", session_id=session.id
        )
