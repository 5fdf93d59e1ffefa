from datetime import timedelta
from pathlib import Path

import pytest

from mailshare_admin.storage.errors import ConstraintViolation
from mailshare_admin.storage.memory import MemoryStore
from mailshare_admin.storage.models import AuditAction, AuditEntry, utcnow

KEY = "unit-test-key-material"


def _store(path: Path | None = None) -> MemoryStore:
    return MemoryStore(secret_key=KEY, state_path=str(path) if path else None)


def _session(store, admin, fingerprint="fp-1", **kwargs):
    return store.upsert_session(
        admin.id,
        admin.email,
        fingerprint,
        device_key_kind=kwargs.get("device_key_kind", "fingerprint"),
        ip=kwargs.get("ip", "10.0.0.1"),
        user_agent=kwargs.get("user_agent", ""),
        device_name=kwargs.get("device_name", "Unknown Device"),
        now=kwargs.get("now"),
    )


class TestAdmins:
    def test_single_admin_enforced(self):
        store = _store()
        store.create_admin("a@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_admin("b@example.com")
        assert store.count_admins() == 1

    def test_email_normalized(self):
        store = _store()
        store.create_admin("  Admin@Example.COM ")
        assert store.get_admin_by_email("admin@example.com") is not None

    def test_delete_all_admins_allows_new_first_admin(self):
        store = _store()
        store.create_admin("a@example.com")
        assert store.delete_all_admins() == 1
        store.create_admin("b@example.com")
        assert store.get_admin_by_email("b@example.com") is not None

    def test_reset_deactivates_but_keeps_sessions(self):
        store = _store()
        admin = store.create_admin("a@example.com")
        sess = _session(store, admin)
        store.delete_all_admins()
        kept = store.get_session(sess.id)
        assert kept is not None
        assert kept.is_active is False
        assert store.list_active_sessions() == []

    def test_totp_secret_encrypted_and_returned_in_clear(self):
        store = _store()
        admin = store.create_admin("a@example.com")
        store.set_admin_totp(admin.id, "JBSWY3DPEHPK3PXP", enabled=False)
        assert store.admins[admin.id].totp_secret != "JBSWY3DPEHPK3PXP"
        assert store.get_admin(admin.id).totp_secret == "JBSWY3DPEHPK3PXP"

    def test_undecryptable_secret_reads_as_missing(self):
        store = _store()
        admin = store.create_admin("a@example.com")
        store.admins[admin.id].totp_secret = "not-a-fernet-token"
        assert store.get_admin(admin.id).totp_secret is None

    def test_returned_records_are_copies(self):
        store = _store()
        admin = store.create_admin("a@example.com")
        admin.email = "changed@example.com"
        assert store.get_admin(admin.id).email == "a@example.com"


class TestSessions:
    def test_upsert_requires_existing_admin(self):
        store = _store()
        with pytest.raises(ConstraintViolation):
            store.upsert_session(
                "ghost", "g@example.com", "fp", device_key_kind="fingerprint",
                ip="1.1.1.1", user_agent="", device_name="Unknown Device",
            )

    def test_touch_only_active(self):
        store = _store()
        admin = store.create_admin("a@example.com")
        sess = _session(store, admin)
        assert store.deactivate_session(sess.id)
        assert store.touch_session(sess.id, now=utcnow() + timedelta(minutes=1)) is False
        assert store.get_session(sess.id).last_seen == sess.last_seen

    def test_list_active_sorted(self):
        store = _store()
        admin = store.create_admin("a@example.com")
        base = utcnow()
        a = _session(store, admin, "fp-a", now=base)
        b = _session(store, admin, "fp-b", now=base + timedelta(seconds=5))
        store.touch_session(a.id, now=base + timedelta(seconds=10))
        assert [s.id for s in store.list_active_sessions()] == [a.id, b.id]


class TestAuditLog:
    def test_append_purges_expired(self):
        store = _store()
        now = utcnow()
        stale = AuditEntry.new(
            AuditAction.LOGIN, "admin", "a@example.com", now=now - timedelta(days=2)
        )
        store.audit_entries.append(stale)
        store.append_audit_entry(AuditEntry.new(AuditAction.LOGOUT, "admin", "a@example.com", now=now))
        assert [e.action for e in store.audit_entries] == [AuditAction.LOGOUT]

    def test_expired_entries_hidden_before_purge(self):
        store = _store()
        now = utcnow()
        entry = AuditEntry.new(AuditAction.LOGIN, "admin", "a@example.com", now=now)
        store.append_audit_entry(entry)
        assert store.list_audit_entries(now=now + timedelta(seconds=86399)) == [entry]
        assert store.list_audit_entries(now=now + timedelta(seconds=86400)) == []
        assert store.purge_expired_audit_entries(now=now + timedelta(seconds=86400)) == 1


class TestSystemSettings:
    def test_defaults(self):
        settings = _store().get_system_settings()
        assert settings.maintenance_mode is False
        assert settings.locale == "en-us"
        assert settings.timezone == "utc"
        assert settings.domain_whitelist_enabled is True
        assert settings.short_session_timeout is False

    def test_update_ignores_unknown_keys(self):
        store = _store()
        updated = store.update_system_settings({"short_session_timeout": True, "bogus": 1})
        assert updated.short_session_timeout is True
        assert not hasattr(updated, "bogus")

    def test_public_view_omits_session_policy(self):
        view = _store().get_system_settings().public_view()
        assert set(view) == {"maintenance_mode", "locale", "timezone", "domain_whitelist_enabled"}


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        path = tmp_path / "state.json"
        store = _store(path)
        admin = store.create_admin("a@example.com")
        store.set_admin_totp(admin.id, "JBSWY3DPEHPK3PXP", enabled=True)
        sess = _session(store, admin)
        store.deactivate_session(sess.id)
        store.append_audit_entry(AuditEntry.new(AuditAction.LOGIN, admin.id, admin.email))
        store.update_system_settings({"locale": "de-de"})

        reloaded = _store(path)
        again = reloaded.get_admin(admin.id)
        assert again.totp_secret == "JBSWY3DPEHPK3PXP"
        assert again.totp_enabled is True
        assert reloaded.get_session(sess.id).is_active is False
        assert len(reloaded.list_audit_entries()) == 1
        assert reloaded.get_system_settings().locale == "de-de"
