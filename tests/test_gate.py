"""Request gate: token, session binding, inactivity expiry and touch ordering."""

from datetime import timedelta

import pytest

from mailshare_admin.service.errors import (
    AuthenticationError,
    LegacySessionError,
    SessionExpiredError,
    SessionRevokedError,
)
from mailshare_admin.service.sessions import Fingerprint, SessionMetadata
from mailshare_admin.storage.models import AuditAction


def _login(stack, fingerprint="fp-1"):
    admin = stack.store.get_admin_by_email("admin@example.com") or stack.store.create_admin(
        "admin@example.com"
    )
    session = stack.registry.upsert_session(
        admin.id, Fingerprint(fingerprint), SessionMetadata(email=admin.email)
    )
    token = stack.tokens.issue(admin, session).token
    return admin, session, f"Bearer {token}"


class TestTokenChecks:
    async def test_missing_header(self, stack):
        with pytest.raises(AuthenticationError) as exc:
            await stack.gate.authenticate(None)
        assert exc.value.error_code == "unauthorized"

    async def test_malformed_header(self, stack):
        with pytest.raises(AuthenticationError):
            await stack.gate.authenticate("Token abc")

    async def test_tampered_token(self, stack):
        _, _, header = _login(stack)
        with pytest.raises(AuthenticationError) as exc:
            await stack.gate.authenticate(header[:-2] + "xx")
        assert exc.value.error_code == "unauthorized"

    async def test_token_without_session_claim_is_legacy(self, stack):
        admin = stack.store.create_admin("admin@example.com")
        payload = {
            "iss": stack.settings.jwt_issuer,
            "aud": stack.settings.jwt_audience,
            "sub": admin.id,
            "email": admin.email,
            "token_type": "access",
            "iat": int(stack.clock().timestamp()),
            "exp": int((stack.clock() + timedelta(minutes=5)).timestamp()),
        }
        token = stack.tokens._encode_jwt(payload)
        with pytest.raises(LegacySessionError) as exc:
            await stack.gate.authenticate(f"Bearer {token}")
        assert exc.value.error_code == "legacy_session"


class TestSessionBinding:
    async def test_valid_request_returns_context(self, stack):
        admin, session, header = _login(stack)
        ctx = await stack.gate.authenticate(header)
        assert ctx.admin_id == admin.id
        assert ctx.email == admin.email
        assert ctx.session_id == session.id

    async def test_revoked_session_rejected_with_valid_token(self, stack):
        _, session, header = _login(stack)
        stack.registry.deactivate(session.id)
        with pytest.raises(SessionRevokedError) as exc:
            await stack.gate.authenticate(header)
        assert exc.value.error_code == "session_revoked"

    async def test_unknown_session_rejected(self, stack):
        _, session, header = _login(stack)
        stack.store.sessions.pop(session.id)
        with pytest.raises(SessionRevokedError):
            await stack.gate.authenticate(header)

    async def test_touch_refreshes_last_seen(self, stack):
        _, session, header = _login(stack)
        later = stack.clock.advance(minutes=10)
        await stack.gate.authenticate(header)
        assert stack.registry.get(session.id).last_seen == later

    async def test_background_poll_does_not_touch(self, stack):
        _, session, header = _login(stack)
        stack.clock.advance(minutes=10)
        await stack.gate.authenticate(header, background=True)
        assert stack.registry.get(session.id).last_seen == session.last_seen


class TestInactivity:
    async def test_exactly_at_threshold_is_allowed(self, stack):
        _, session, header = _login(stack)
        stack.store.update_system_settings({"short_session_timeout": True})
        # Token lifetime is one hour, so age the session record instead of the clock
        stack.store.sessions[session.id].last_seen = stack.clock() - timedelta(hours=24)
        ctx = await stack.gate.authenticate(header)
        assert ctx.session_id == session.id
        assert stack.registry.get(session.id).is_active

    async def test_one_second_past_threshold_expires(self, stack):
        admin, session, header = _login(stack)
        stack.store.update_system_settings({"short_session_timeout": True})
        stack.store.sessions[session.id].last_seen = stack.clock() - timedelta(
            hours=24, seconds=1
        )
        sub = stack.bus.subscribe()
        with pytest.raises(SessionExpiredError) as exc:
            await stack.gate.authenticate(header)
        assert exc.value.error_code == "session_expired"
        assert not stack.registry.get(session.id).is_active

        entries = stack.audit.recent()
        assert entries[0].action is AuditAction.LOGOUT
        assert entries[0].admin_id == admin.id
        assert entries[0].details == "Session timed out after 24 hours of inactivity"

        events = sub.drain()
        session_events = [e for e in events if e["event"] == "session_update"]
        assert session_events == [
            {
                "event": "session_update",
                "data": {
                    "type": "logout",
                    "email": admin.email,
                    "reason": "timeout",
                    "session_id": session.id,
                },
            }
        ]

    async def test_long_threshold_applies_when_short_timeout_off(self, stack):
        _, session, header = _login(stack)
        stack.store.sessions[session.id].last_seen = stack.clock() - timedelta(days=29)
        await stack.gate.authenticate(header)

        stack.store.sessions[session.id].last_seen = stack.clock() - timedelta(
            days=30, seconds=1
        )
        with pytest.raises(SessionExpiredError):
            await stack.gate.authenticate(header)
        assert stack.audit.recent()[0].details == (
            "Session timed out after 30 days of inactivity"
        )

    async def test_policy_read_on_every_call(self, stack):
        _, session, header = _login(stack)
        stack.store.sessions[session.id].last_seen = stack.clock() - timedelta(hours=25)
        await stack.gate.authenticate(header, background=True)

        stack.store.update_system_settings({"short_session_timeout": True})
        with pytest.raises(SessionExpiredError):
            await stack.gate.authenticate(header)

    async def test_background_poll_still_expires_idle_session(self, stack):
        admin, session, header = _login(stack)
        stack.store.update_system_settings({"short_session_timeout": True})
        stale = stack.clock() - timedelta(hours=24, seconds=1)
        stack.store.sessions[session.id].last_seen = stale
        sub = stack.bus.subscribe()

        with pytest.raises(SessionExpiredError):
            await stack.gate.authenticate(header, background=True)

        stored = stack.registry.get(session.id)
        assert stored.is_active is False
        assert stored.last_seen == stale
        entry = stack.audit.recent()[0]
        assert entry.action is AuditAction.LOGOUT
        assert entry.admin_id == admin.id
        assert entry.details == "Session timed out after 24 hours of inactivity"
        assert entry.timestamp == stack.clock()
        assert any(
            e["event"] == "session_update" and e["data"]["reason"] == "timeout"
            for e in sub.drain()
        )

    async def test_expired_session_stays_revoked(self, stack):
        _, session, header = _login(stack)
        stack.store.update_system_settings({"short_session_timeout": True})
        stack.store.sessions[session.id].last_seen = stack.clock() - timedelta(hours=30)
        with pytest.raises(SessionExpiredError):
            await stack.gate.authenticate(header)
        with pytest.raises(SessionRevokedError):
            await stack.gate.authenticate(header)

    async def test_new_verification_reactivates_device(self, stack):
        admin, session, header = _login(stack)
        stack.store.update_system_settings({"short_session_timeout": True})
        stack.store.sessions[session.id].last_seen = stack.clock() - timedelta(hours=30)
        with pytest.raises(SessionExpiredError):
            await stack.gate.authenticate(header)

        _, again, new_header = _login(stack)
        assert again.id == session.id
        ctx = await stack.gate.authenticate(new_header)
        assert ctx.session_id == session.id


class TestStaticPolicy:
    async def test_custom_threshold_and_label(self, stack):
        from mailshare_admin.service.gate import RequestGate
        from mailshare_admin.service.policy import InactivityThreshold, StaticInactivityPolicy

        policy = StaticInactivityPolicy(
            threshold=InactivityThreshold(timedelta(minutes=10), "10 minutes")
        )
        gate = RequestGate(stack.registry, stack.tokens, policy, stack.audit, clock=stack.clock)
        _, session, header = _login(stack)

        stack.clock.advance(minutes=10)
        await gate.authenticate(header)
        stack.clock.advance(minutes=10, seconds=1)
        with pytest.raises(SessionExpiredError):
            await gate.authenticate(header)
        assert stack.audit.recent()[0].details == (
            "Session timed out after 10 minutes of inactivity"
        )

    def test_flag_selects_builtin_thresholds(self):
        from mailshare_admin.service.policy import StaticInactivityPolicy

        assert StaticInactivityPolicy(short_session_timeout=True).current_threshold().label == "24 hours"
        assert StaticInactivityPolicy().current_threshold().label == "30 days"
