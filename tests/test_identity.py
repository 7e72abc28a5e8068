"""
Unit tests for the identity layer and OAuth profile normalization.

Tests cover:
- Google / GitHub profile mapping
- Verification tokens (single use, expiry)
- Purging expired sessions and tokens (service + script)
"""
from datetime import datetime, timedelta

import pytest

from app.stackkit import create_app
from app.stackkit.db import session_scope
from app.stackkit.identity import (
    create_session,
    create_verification_token,
    get_valid_session,
    purge_expired,
    use_verification_token,
)
from app.stackkit.models import AuthSession, Base, User, VerificationToken
from app.stackkit.oauth import SignInError, profile_from_github, profile_from_google, token_expires_at


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def _user(s) -> User:
    u = User(email="grace@example.com", name="Grace Hopper", is_active=True)
    s.add(u)
    s.flush()
    return u


class TestProfileMapping:
    def test_google_profile(self):
        p = profile_from_google(
            {"sub": "1234", "email": "Grace@Example.com", "email_verified": True, "name": "Grace", "picture": "https://x/p.png"},
            {"access_token": "at"},
        )
        assert p.provider == "google"
        assert p.provider_account_id == "1234"
        assert p.email == "grace@example.com"
        assert p.email_verified is True
        assert p.image == "https://x/p.png"
        assert p.token == {"access_token": "at"}

    def test_google_unverified_email(self):
        p = profile_from_google({"sub": "1", "email": "a@b.c", "email_verified": False})
        assert p.email_verified is False

    def test_google_missing_subject(self):
        with pytest.raises(SignInError) as exc:
            profile_from_google({"email": "a@b.c"})
        assert exc.value.code == "OAuthCallback"

    def test_github_public_email(self):
        p = profile_from_github({"id": 42, "login": "octo", "email": "octo@example.com", "avatar_url": "https://a/o.png"})
        assert p.provider_account_id == "42"
        assert p.name == "octo"
        assert p.email == "octo@example.com"
        # A public profile email is not asserted as verified.
        assert p.email_verified is False

    def test_github_private_email_uses_primary_verified(self):
        emails = [
            {"email": "old@example.com", "primary": False, "verified": True},
            {"email": "Main@Example.com", "primary": True, "verified": True},
        ]
        p = profile_from_github({"id": 7, "login": "octo", "name": "Octo Cat", "email": None}, emails)
        assert p.email == "main@example.com"
        assert p.email_verified is True
        assert p.name == "Octo Cat"

    def test_github_without_any_email(self):
        p = profile_from_github({"id": 7, "login": "octo"}, [{"email": "x@y.z", "primary": True, "verified": False}])
        assert p.email is None

    def test_token_expires_at(self):
        assert token_expires_at({"expires_at": 1700000000}) == 1700000000
        assert token_expires_at({}) is None
        in_an_hour = token_expires_at({"expires_in": 3600})
        assert in_an_hour is not None
        assert abs(in_an_hour - (datetime.utcnow().timestamp() + 3600)) < 5


class TestSessions:
    def test_unknown_token(self, app):
        with session_scope(app) as s:
            assert get_valid_session(s, "missing", max_age=60, update_age=10) is None
            assert get_valid_session(s, "", max_age=60, update_age=10) is None

    def test_tokens_are_unique(self, app):
        with session_scope(app) as s:
            u = _user(s)
            a = create_session(s, u, max_age=60)
            b = create_session(s, u, max_age=60)
            assert a.session_token != b.session_token

    def test_expiry_boundary(self, app):
        now = datetime(2026, 1, 1, 12, 0, 0)
        with session_scope(app) as s:
            u = _user(s)
            sess = create_session(s, u, max_age=60, now=now)
            token = sess.session_token
            assert get_valid_session(s, token, max_age=60, update_age=10, now=now + timedelta(seconds=59)) is not None
            assert get_valid_session(s, token, max_age=60, update_age=10, now=now + timedelta(seconds=120)) is None
            s.flush()
            assert s.query(AuthSession).count() == 0


class TestVerificationTokens:
    def test_single_use(self, app):
        with session_scope(app) as s:
            vt = create_verification_token(s, "grace@example.com", ttl_seconds=60)
            token = vt.token
        with session_scope(app) as s:
            assert use_verification_token(s, "grace@example.com", token) is not None
        with session_scope(app) as s:
            assert use_verification_token(s, "grace@example.com", token) is None

    def test_identifier_must_match(self, app):
        with session_scope(app) as s:
            vt = create_verification_token(s, "grace@example.com", ttl_seconds=60)
            assert use_verification_token(s, "someone@example.com", vt.token) is None

    def test_expired_token_is_consumed(self, app):
        now = datetime(2026, 1, 1, 12, 0, 0)
        with session_scope(app) as s:
            vt = create_verification_token(s, "grace@example.com", ttl_seconds=60, now=now)
            assert use_verification_token(s, "grace@example.com", vt.token, now=now + timedelta(minutes=5)) is None
            s.flush()
            assert s.query(VerificationToken).count() == 0


class TestPurge:
    def _seed(self, app, now):
        with session_scope(app) as s:
            u = _user(s)
            create_session(s, u, max_age=60, now=now - timedelta(hours=2))  # expired
            create_session(s, u, max_age=3600, now=now)  # live
            create_verification_token(s, "a@example.com", ttl_seconds=60, now=now - timedelta(hours=2))
            create_verification_token(s, "b@example.com", ttl_seconds=3600, now=now)

    def test_purge_expired(self, app):
        now = datetime.utcnow()
        self._seed(app, now)
        with session_scope(app) as s:
            assert purge_expired(s, now) == (1, 1)
        with session_scope(app) as s:
            assert s.query(AuthSession).count() == 1
            assert s.query(VerificationToken).count() == 1

    def test_purge_script_dry_run_and_delete(self, app, tmp_path):
        from scripts.purge_sessions import purge

        now = datetime.utcnow()
        self._seed(app, now)
        url = f"sqlite:///{tmp_path/'test.db'}"
        assert purge(url, dry_run=True, now=now) == (1, 1)
        assert purge(url, now=now) == (1, 1)
        assert purge(url, now=now) == (0, 0)
