from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Union

from user_agents import parse as parse_user_agent

from mailshare_admin.logging import get_logger
from mailshare_admin.storage.models import Session, utcnow

logger = get_logger(__name__)

UNKNOWN_IP = "unknown"
UNKNOWN_DEVICE = "Unknown Device"
_IPV4_MAPPED_PREFIX = "::ffff:"


@dataclass(frozen=True)
class Fingerprint:
    value: str
    kind = "fingerprint"


@dataclass(frozen=True)
class IpFallback:
    """Device key taken from the client IP when no fingerprint was sent.

    Distinct devices behind one NAT address share this key and therefore
    one session record.
    """

    value: str
    kind = "ip"


DeviceKey = Union[Fingerprint, IpFallback]


def resolve_device_key(fingerprint: Optional[str], ip: str) -> DeviceKey:
    if fingerprint and fingerprint.strip():
        return Fingerprint(fingerprint.strip())
    return IpFallback(ip or UNKNOWN_IP)


def normalize_client_ip(forwarded_for: Optional[str], remote_addr: Optional[str]) -> str:
    candidate = ""
    if forwarded_for:
        candidate = forwarded_for.split(",")[0].strip()
    if not candidate:
        candidate = (remote_addr or "").strip()
    if candidate.startswith(_IPV4_MAPPED_PREFIX):
        candidate = candidate[len(_IPV4_MAPPED_PREFIX):]
    return candidate or UNKNOWN_IP


def derive_device_name(user_agent: Optional[str]) -> str:
    if not user_agent:
        return UNKNOWN_DEVICE
    parsed = parse_user_agent(user_agent)
    parts = [
        family
        for family in (parsed.os.family, parsed.browser.family)
        if family and family != "Other"
    ]
    return " ".join(parts).strip() or UNKNOWN_DEVICE


@dataclass
class SessionMetadata:
    email: str
    ip: str = UNKNOWN_IP
    user_agent: str = ""
    device_name: str = UNKNOWN_DEVICE


class SessionRegistry:
    """Device-keyed session records for the administrator."""

    def __init__(self, store, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    def upsert_session(
        self, admin_id: str, device_key: DeviceKey, metadata: SessionMetadata
    ) -> Session:
        if isinstance(device_key, IpFallback):
            logger.info(
                "session_ip_fallback_key",
                admin_id=admin_id,
                ip=device_key.value,
            )
        session = self.store.upsert_session(
            admin_id,
            metadata.email,
            device_key.value,
            device_key_kind=device_key.kind,
            ip=metadata.ip,
            user_agent=metadata.user_agent,
            device_name=metadata.device_name,
            now=self.now(),
        )
        logger.info(
            "session_upserted",
            admin_id=admin_id,
            session_id=session.id,
            device_key_kind=device_key.kind,
        )
        return session

    def touch(self, session_id: str) -> bool:
        return self.store.touch_session(session_id, now=self.now())

    def deactivate(self, session_id: str) -> bool:
        existed = self.store.deactivate_session(session_id)
        if existed:
            logger.info("session_deactivated", session_id=session_id)
        return existed

    def list_active(self) -> List[Session]:
        return self.store.list_active_sessions()

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)
