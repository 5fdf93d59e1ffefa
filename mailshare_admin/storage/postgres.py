from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from mailshare_admin.logging import get_logger
from mailshare_admin.storage.common import SecretCipher, normalize_email, safe_row_value
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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS admin_account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        totp_secret TEXT,
        totp_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    # At most one row: every row indexes to the same constant key
    "CREATE UNIQUE INDEX IF NOT EXISTS admin_account_singleton ON admin_account ((TRUE))",
    """
    CREATE TABLE IF NOT EXISTS admin_session (
        id TEXT PRIMARY KEY,
        admin_id TEXT NOT NULL,
        email TEXT NOT NULL,
        fingerprint TEXT NOT NULL,
        device_key_kind TEXT NOT NULL DEFAULT 'fingerprint',
        ip TEXT NOT NULL,
        user_agent TEXT NOT NULL DEFAULT '',
        device_name TEXT NOT NULL DEFAULT 'Unknown Device',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_seen TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        UNIQUE (admin_id, fingerprint)
    )
    """,
    "CREATE INDEX IF NOT EXISTS admin_session_active_idx ON admin_session (is_active, last_seen DESC)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        admin_id TEXT NOT NULL,
        email TEXT NOT NULL,
        action TEXT NOT NULL,
        details TEXT NOT NULL DEFAULT '',
        ip TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_expiry_idx ON audit_log (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS system_settings (
        id SMALLINT PRIMARY KEY DEFAULT 1 CHECK (id = 1),
        maintenance_mode BOOLEAN NOT NULL DEFAULT FALSE,
        locale TEXT NOT NULL DEFAULT 'en-us',
        timezone TEXT NOT NULL DEFAULT 'utc',
        domain_whitelist_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        short_session_timeout BOOLEAN NOT NULL DEFAULT FALSE,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for administrators, sessions, audit log and settings.

    Each operation is a single statement so record updates stay atomic
    without cross-record transactions.
    """

    def __init__(self, dsn: str, *, secret_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(secret_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # administrators
    def _row_to_admin(self, row: Any) -> Admin:
        return Admin(
            id=str(row["id"]),
            email=row["email"],
            password_hash=safe_row_value(row, "password_hash"),
            totp_secret=self._cipher.decrypt(safe_row_value(row, "totp_secret")),
            totp_enabled=bool(safe_row_value(row, "totp_enabled", False)),
            created_at=safe_row_value(row, "created_at", utcnow()),
        )

    def count_admins(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS n FROM admin_account").fetchone()
        return int(safe_row_value(row, "n", 0))

    def create_admin(self, email: str, password_hash: Optional[str] = None) -> Admin:
        admin = Admin.new(normalize_email(email), password_hash=password_hash)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO admin_account (id, email, password_hash, totp_enabled, created_at)
                    VALUES (%s, %s, %s, FALSE, %s)
                    """,
                    (admin.id, admin.email, password_hash, admin.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "an administrator is already registered", {"field": "email"}
            )
        return admin

    def get_admin(self, admin_id: str) -> Optional[Admin]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_account WHERE id = %s", (admin_id,)
            ).fetchone()
        return self._row_to_admin(row) if row else None

    def get_admin_by_email(self, email: str) -> Optional[Admin]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_admin(row) if row else None

    def set_admin_password(self, admin_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE admin_account SET password_hash = %s WHERE id = %s",
                (password_hash, admin_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("admin not found", {"admin_id": admin_id})

    def set_admin_totp(
        self, admin_id: str, secret: Optional[str], *, enabled: bool
    ) -> Admin:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_account SET totp_secret = %s, totp_enabled = %s
                WHERE id = %s
                RETURNING *
                """,
                (self._cipher.encrypt(secret), enabled, admin_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("admin not found", {"admin_id": admin_id})
        return self._row_to_admin(row)

    def enable_admin_totp(self, admin_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE admin_account SET totp_enabled = TRUE WHERE id = %s",
                (admin_id,),
            )

    def delete_all_admins(self) -> int:
        """Remove the administrator; session history stays, deactivated."""
        with self._connect() as conn:
            conn.execute("UPDATE admin_session SET is_active = FALSE WHERE is_active")
            cur = conn.execute("DELETE FROM admin_account")
            return cur.rowcount

    # sessions
    @staticmethod
    def _row_to_session(row: Any) -> Session:
        return Session(
            id=str(row["id"]),
            admin_id=str(row["admin_id"]),
            email=row["email"],
            fingerprint=row["fingerprint"],
            device_key_kind=safe_row_value(row, "device_key_kind", "fingerprint"),
            ip=safe_row_value(row, "ip", "unknown"),
            user_agent=safe_row_value(row, "user_agent", ""),
            device_name=safe_row_value(row, "device_name", "Unknown Device"),
            created_at=safe_row_value(row, "created_at", utcnow()),
            last_seen=safe_row_value(row, "last_seen", utcnow()),
            is_active=bool(safe_row_value(row, "is_active", False)),
        )

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
        candidate = Session.new(
            admin_id,
            email,
            fingerprint,
            device_key_kind=device_key_kind,
            ip=ip,
            user_agent=user_agent,
            device_name=device_name,
            now=now,
        )
        # Sessions outlive admin resets, so admin existence is checked inline
        # rather than through a foreign key
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO admin_session (
                    id, admin_id, email, fingerprint, device_key_kind, ip,
                    user_agent, device_name, created_at, last_seen, is_active
                )
                SELECT %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, TRUE
                WHERE EXISTS (SELECT 1 FROM admin_account WHERE id = %s)
                ON CONFLICT (admin_id, fingerprint) DO UPDATE
                SET email = EXCLUDED.email,
                    device_key_kind = EXCLUDED.device_key_kind,
                    ip = EXCLUDED.ip,
                    user_agent = EXCLUDED.user_agent,
                    device_name = EXCLUDED.device_name,
                    last_seen = EXCLUDED.last_seen,
                    is_active = TRUE
                RETURNING *
                """,
                (
                    candidate.id,
                    admin_id,
                    email,
                    fingerprint,
                    device_key_kind,
                    ip,
                    user_agent,
                    device_name,
                    candidate.created_at,
                    candidate.last_seen,
                    admin_id,
                ),
            ).fetchone()
        if row is None:
            raise ConstraintViolation("admin does not exist", {"admin_id": admin_id})
        return self._row_to_session(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(self, session_id: str, now: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE admin_session SET last_seen = %s WHERE id = %s AND is_active",
                (now or utcnow(), session_id),
            )
            return cur.rowcount > 0

    def deactivate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE admin_session SET is_active = FALSE WHERE id = %s",
                (session_id,),
            )
            return cur.rowcount > 0

    def list_active_sessions(self) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM admin_session WHERE is_active ORDER BY last_seen DESC"
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    # audit log
    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM audit_log WHERE expires_at <= %s", (entry.timestamp,)
            )
            conn.execute(
                """
                INSERT INTO audit_log (id, admin_id, email, action, details, ip, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.admin_id,
                    entry.email,
                    entry.action.value,
                    entry.details,
                    entry.ip,
                    entry.timestamp,
                    entry.expires_at,
                ),
            )
        return entry

    def list_audit_entries(
        self, limit: int = 100, now: Optional[datetime] = None
    ) -> List[AuditEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM audit_log
                WHERE expires_at > %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (now or utcnow(), max(limit, 0)),
            ).fetchall()
        return [
            AuditEntry(
                id=str(row["id"]),
                admin_id=row["admin_id"],
                email=row["email"],
                action=AuditAction(row["action"]),
                details=safe_row_value(row, "details", ""),
                ip=safe_row_value(row, "ip", "unknown"),
                timestamp=row["created_at"],
                expires_at=row["expires_at"],
            )
            for row in rows
        ]

    def purge_expired_audit_entries(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM audit_log WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount

    # system settings
    @staticmethod
    def _row_to_settings(row: Any) -> SystemSettings:
        defaults = SystemSettings()
        return SystemSettings(
            maintenance_mode=bool(safe_row_value(row, "maintenance_mode", defaults.maintenance_mode)),
            locale=safe_row_value(row, "locale", defaults.locale),
            timezone=safe_row_value(row, "timezone", defaults.timezone),
            domain_whitelist_enabled=bool(
                safe_row_value(row, "domain_whitelist_enabled", defaults.domain_whitelist_enabled)
            ),
            short_session_timeout=bool(
                safe_row_value(row, "short_session_timeout", defaults.short_session_timeout)
            ),
            updated_at=safe_row_value(row, "updated_at", defaults.updated_at),
        )

    def get_system_settings(self) -> SystemSettings:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO system_settings (id) VALUES (1) ON CONFLICT (id) DO NOTHING"
            )
            row = conn.execute("SELECT * FROM system_settings WHERE id = 1").fetchone()
        return self._row_to_settings(row)

    def update_system_settings(self, changes: Dict[str, Any]) -> SystemSettings:
        updates = {k: v for k, v in changes.items() if k in SYSTEM_SETTINGS_FIELDS}
        if not updates:
            return self.get_system_settings()
        # Column names come from SYSTEM_SETTINGS_FIELDS only
        assignments = ", ".join(f"{column} = %s" for column in updates)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO system_settings (id) VALUES (1) ON CONFLICT (id) DO NOTHING"
            )
            row = conn.execute(
                f"UPDATE system_settings SET {assignments}, updated_at = now() WHERE id = 1 RETURNING *",
                tuple(updates.values()),
            ).fetchone()
        return self._row_to_settings(row)
