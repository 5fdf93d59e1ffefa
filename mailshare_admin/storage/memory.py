from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from mailshare_admin.logging import get_logger
from mailshare_admin.storage.common import SecretCipher, normalize_email
from mailshare_admin.storage.errors import ConstraintViolation
from mailshare_admin.storage.models import (
    SYSTEM_SETTINGS_FIELDS,
    Admin,
    AuditAction,
    AuditEntry,
    Session,
    SystemSettings,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every public method runs under one re-entrant lock, so each record update
    is atomic. When ``state_path`` is given, state is snapshotted to JSON after
    every mutation and reloaded on start.
    """

    def __init__(
        self,
        *,
        secret_key: str,
        state_path: Optional[str] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.admins: Dict[str, Admin] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_entries: List[AuditEntry] = []
        self.system_settings = SystemSettings()
        # RLock so helpers can re-enter from public methods
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(secret_key)
        self.state_path = Path(state_path) if state_path else None

        if self.state_path is not None and not self._load_state():
            self._persist_state()

    # administrators
    def count_admins(self) -> int:
        with self._data_lock:
            return len(self.admins)

    def create_admin(self, email: str, password_hash: Optional[str] = None) -> Admin:
        with self._data_lock:
            if self.admins:
                raise ConstraintViolation(
                    "an administrator is already registered", {"field": "email"}
                )
            admin = Admin.new(normalize_email(email), password_hash=password_hash)
            self.admins[admin.id] = admin
            self._persist_state()
            return self._public_admin(admin)

    def get_admin(self, admin_id: str) -> Optional[Admin]:
        with self._data_lock:
            admin = self.admins.get(admin_id)
            return self._public_admin(admin) if admin else None

    def get_admin_by_email(self, email: str) -> Optional[Admin]:
        normalized = normalize_email(email)
        with self._data_lock:
            for admin in self.admins.values():
                if admin.email == normalized:
                    return self._public_admin(admin)
            return None

    def set_admin_password(self, admin_id: str, password_hash: str) -> None:
        with self._data_lock:
            admin = self.admins.get(admin_id)
            if not admin:
                raise ConstraintViolation("admin not found", {"admin_id": admin_id})
            admin.password_hash = password_hash
            self._persist_state()

    def set_admin_totp(
        self, admin_id: str, secret: Optional[str], *, enabled: bool
    ) -> Admin:
        with self._data_lock:
            admin = self.admins.get(admin_id)
            if not admin:
                raise ConstraintViolation("admin not found", {"admin_id": admin_id})
            admin.totp_secret = self._cipher.encrypt(secret)
            admin.totp_enabled = enabled
            self._persist_state()
            return self._public_admin(admin)

    def enable_admin_totp(self, admin_id: str) -> None:
        with self._data_lock:
            admin = self.admins.get(admin_id)
            if not admin:
                raise ConstraintViolation("admin not found", {"admin_id": admin_id})
            admin.totp_enabled = True
            self._persist_state()

    def delete_all_admins(self) -> int:
        with self._data_lock:
            removed = len(self.admins)
            self.admins.clear()
            for sess in self.sessions.values():
                sess.is_active = False
            self._persist_state()
            return removed

    def _public_admin(self, admin: Admin) -> Admin:
        """Copy of the record with the TOTP secret decrypted."""
        return replace(admin, totp_secret=self._cipher.decrypt(admin.totp_secret))

    # sessions
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
    ) -> Session:
        now = now or utcnow()
        with self._data_lock:
            if admin_id not in self.admins:
                raise ConstraintViolation("admin does not exist", {"admin_id": admin_id})
            for sess in self.sessions.values():
                if sess.admin_id == admin_id and sess.fingerprint == fingerprint:
                    sess.email = email
                    sess.device_key_kind = device_key_kind
                    sess.ip = ip
                    sess.user_agent = user_agent
                    sess.device_name = device_name
                    sess.last_seen = now
                    sess.is_active = True
                    self._persist_state()
                    return replace(sess)
            sess = Session.new(
                admin_id,
                email,
                fingerprint,
                device_key_kind=device_key_kind,
                ip=ip,
                user_agent=user_agent,
                device_name=device_name,
                now=now,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def touch_session(self, session_id: str, now: Optional[datetime] = None) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            # Inactive sessions only come back through upsert_session
            if not sess or not sess.is_active:
                return False
            sess.last_seen = now or utcnow()
            self._persist_state()
            return True

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            if sess.is_active:
                sess.is_active = False
                self._persist_state()
            return True

    def list_active_sessions(self) -> List[Session]:
        with self._data_lock:
            active = [replace(s) for s in self.sessions.values() if s.is_active]
        active.sort(key=lambda s: s.last_seen, reverse=True)
        return active

    # audit log
    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._data_lock:
            self._purge_expired_locked(entry.timestamp)
            self.audit_entries.append(entry)
            self._persist_state()
            return entry

    def list_audit_entries(
        self, limit: int = 100, now: Optional[datetime] = None
    ) -> List[AuditEntry]:
        now = now or utcnow()
        with self._data_lock:
            live = [e for e in self.audit_entries if not e.is_expired(now)]
        live.sort(key=lambda e: e.timestamp, reverse=True)
        return live[: max(limit, 0)]

    def purge_expired_audit_entries(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            removed = self._purge_expired_locked(now or utcnow())
            if removed:
                self._persist_state()
            return removed

    def _purge_expired_locked(self, now: datetime) -> int:
        before = len(self.audit_entries)
        self.audit_entries = [e for e in self.audit_entries if not e.is_expired(now)]
        return before - len(self.audit_entries)

    # system settings
    def get_system_settings(self) -> SystemSettings:
        with self._data_lock:
            return replace(self.system_settings)

    def update_system_settings(self, changes: Dict[str, Any]) -> SystemSettings:
        with self._data_lock:
            updates = {k: v for k, v in changes.items() if k in SYSTEM_SETTINGS_FIELDS}
            self.system_settings = replace(
                self.system_settings, **updates, updated_at=utcnow()
            )
            self._persist_state()
            return replace(self.system_settings)

    def verify_connection(self) -> None:
        return None

    # persistence
    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "admins": [self._serialize_admin(a) for a in self.admins.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "audit_entries": [self._serialize_audit(e) for e in self.audit_entries],
            "system_settings": self.system_settings.to_dict(),
        }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.admins = {
            a["id"]: self._deserialize_admin(a) for a in data.get("admins", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.audit_entries = [
            self._deserialize_audit(e) for e in data.get("audit_entries", [])
        ]
        raw_settings = data.get("system_settings") or {}
        self.system_settings = SystemSettings(
            **{k: raw_settings[k] for k in SYSTEM_SETTINGS_FIELDS if k in raw_settings},
            updated_at=self._deserialize_datetime(
                raw_settings.get("updated_at") or utcnow().isoformat()
            ),
        )
        self.logger.info(
            "memory_store_state_loaded",
            admins=len(self.admins),
            sessions=len(self.sessions),
            path=str(self.state_path),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize_admin(self, admin: Admin) -> dict:
        # totp_secret is already the encrypted form here
        return {
            "id": admin.id,
            "email": admin.email,
            "password_hash": admin.password_hash,
            "totp_secret": admin.totp_secret,
            "totp_enabled": admin.totp_enabled,
            "created_at": self._serialize_datetime(admin.created_at),
        }

    def _deserialize_admin(self, data: dict) -> Admin:
        return Admin(
            id=data["id"],
            email=data["email"],
            password_hash=data.get("password_hash"),
            totp_secret=data.get("totp_secret"),
            totp_enabled=bool(data.get("totp_enabled", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "admin_id": session.admin_id,
            "email": session.email,
            "fingerprint": session.fingerprint,
            "device_key_kind": session.device_key_kind,
            "ip": session.ip,
            "user_agent": session.user_agent,
            "device_name": session.device_name,
            "created_at": self._serialize_datetime(session.created_at),
            "last_seen": self._serialize_datetime(session.last_seen),
            "is_active": session.is_active,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            admin_id=data["admin_id"],
            email=data["email"],
            fingerprint=data["fingerprint"],
            device_key_kind=data.get("device_key_kind", "fingerprint"),
            ip=data.get("ip", "unknown"),
            user_agent=data.get("user_agent", ""),
            device_name=data.get("device_name", "Unknown Device"),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_seen=self._deserialize_datetime(data["last_seen"]),
            is_active=bool(data.get("is_active", False)),
        )

    def _serialize_audit(self, entry: AuditEntry) -> dict:
        data = entry.to_dict()
        data["expires_at"] = self._serialize_datetime(entry.expires_at)
        return data

    def _deserialize_audit(self, data: dict) -> AuditEntry:
        return AuditEntry(
            id=data["id"],
            admin_id=data["admin_id"],
            email=data["email"],
            action=AuditAction(data["action"]),
            details=data.get("details", ""),
            ip=data.get("ip", "unknown"),
            timestamp=self._deserialize_datetime(data["timestamp"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )
