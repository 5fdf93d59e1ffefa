from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from mailshare_admin.logging import get_logger
from mailshare_admin.service.events import AUDIT_LOG, SESSION_UPDATE, EventBus
from mailshare_admin.storage.models import AuditAction, AuditEntry, utcnow

logger = get_logger(__name__)

MAX_RECENT_ENTRIES = 100


class AuditFanout:
    """Writes audit entries and broadcasts them to live observers.

    The store write is authoritative; publication is best-effort and a bus
    failure never undoes a recorded entry.
    """

    def __init__(
        self, store, bus: EventBus, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self.bus = bus
        self._clock = clock or utcnow

    async def record(
        self,
        action: AuditAction,
        admin_id: str,
        email: str,
        details: str = "",
        ip: str = "unknown",
    ) -> AuditEntry:
        entry = AuditEntry.new(action, admin_id, email, details, ip, now=self._clock())
        self.store.append_audit_entry(entry)
        logger.info(
            "audit_entry_recorded",
            action=entry.action.value,
            admin_id=admin_id,
            entry_id=entry.id,
        )
        await self._publish({"event": AUDIT_LOG, "data": entry.to_dict()})
        return entry

    async def notify_session(
        self,
        type: str,
        email: str,
        reason: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        data: Dict[str, Any] = {"type": type, "email": email}
        if reason is not None:
            data["reason"] = reason
        if session_id is not None:
            data["session_id"] = session_id
        await self._publish({"event": SESSION_UPDATE, "data": data})

    def recent(self, limit: int = MAX_RECENT_ENTRIES) -> List[AuditEntry]:
        limit = max(0, min(limit, MAX_RECENT_ENTRIES))
        return self.store.list_audit_entries(limit=limit, now=self._clock())

    async def _publish(self, event: Dict[str, Any]) -> None:
        try:
            await self.bus.publish(event)
        except Exception as exc:
            logger.warning(
                "audit_event_publish_failed",
                event_name=event.get("event"),
                error=str(exc),
            )
