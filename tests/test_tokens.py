import base64
import json

import pytest

from mailshare_admin.config import get_settings
from mailshare_admin.service.errors import AuthenticationError
from mailshare_admin.service.tokens import TokenIssuer, extract_bearer
from mailshare_admin.storage.models import Admin, Session


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


@pytest.fixture
def issuer(clock):
    return TokenIssuer(get_settings(), clock=clock)


@pytest.fixture
def admin():
    return Admin.new("admin@example.com")


@pytest.fixture
def session(admin, clock):
    return Session.new(admin.id, admin.email, "fp-1", now=clock())


class TestIssue:
    def test_round_trip_claims(self, issuer, admin, session, clock):
        issued = issuer.issue(admin, session)
        payload = issuer.verify(issued.token)
        assert payload["sub"] == admin.id
        assert payload["email"] == admin.email
        assert payload["sid"] == session.id
        assert payload["token_type"] == "access"
        assert payload["aud"] == "mailshare-admin"
        assert payload["iss"] == "mailshare"
        assert payload["exp"] - payload["iat"] == 3600
        assert issued.session_id == session.id

    def test_unique_jti(self, issuer, admin, session):
        first = issuer.verify(issuer.issue(admin, session).token)
        second = issuer.verify(issuer.issue(admin, session).token)
        assert first["jti"] != second["jti"]


class TestVerify:
    def test_expired_token_rejected(self, issuer, admin, session, clock):
        token = issuer.issue(admin, session).token
        clock.advance(minutes=60, seconds=1)
        with pytest.raises(AuthenticationError):
            issuer.verify(token)

    def test_tampered_payload_rejected(self, issuer, admin, session):
        header, _, signature = issuer.issue(admin, session).token.split(".")
        forged = _b64({"sub": "someone-else", "sid": session.id})
        with pytest.raises(AuthenticationError):
            issuer.verify(f"{header}.{forged}.{signature}")

    def test_other_secret_rejected(self, admin, session, clock):
        other = TokenIssuer(
            get_settings().model_copy(update={"jwt_secret": "x" * 64}), clock=clock
        )
        token = other.issue(admin, session).token
        with pytest.raises(AuthenticationError):
            TokenIssuer(get_settings(), clock=clock).verify(token)

    def test_none_algorithm_rejected(self, issuer, admin, session):
        _, payload, signature = issuer.issue(admin, session).token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(AuthenticationError):
            issuer.verify(f"{header}.{payload}.{signature}")

    def test_wrong_audience_rejected(self, admin, session, clock):
        foreign = TokenIssuer(
            get_settings().model_copy(update={"jwt_audience": "someone-else"}),
            clock=clock,
        )
        token = foreign.issue(admin, session).token
        with pytest.raises(AuthenticationError):
            TokenIssuer(get_settings(), clock=clock).verify(token)

    def test_garbage_rejected(self, issuer):
        for token in ("", "abc", "a.b", "a.b.c.d"):
            with pytest.raises(AuthenticationError):
                issuer.verify(token)


class TestExtractBearer:
    def test_bearer_scheme(self):
        assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"
        assert extract_bearer("bearer   abc") == "abc"

    def test_missing_or_other_scheme(self):
        assert extract_bearer(None) is None
        assert extract_bearer("") is None
        assert extract_bearer("Basic dXNlcjpwYXNz") is None
        assert extract_bearer("Bearer") is None
