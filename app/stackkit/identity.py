"""
Users, linked provider accounts, database sessions and verification tokens.

Session policy:
- the cookie carries only an opaque token; the row in `sessions` is the truth
- a row past `expires` is deleted on sight and treated as signed out
- expiry rolls forward to now + max_age at most once per `update_age`
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete

from app.stackkit.audit import record_event
from app.stackkit.models import Account, AuthSession, User, VerificationToken
from app.stackkit.oauth import OAuthProfile, SignInError, token_expires_at

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _new_token() -> str:
    return secrets.token_urlsafe(32)


# ---------- Users & accounts ----------
def link_account(s: "Session", user: User, profile: OAuthProfile) -> Account:
    token = profile.token or {}
    acct = Account(
        user_id=user.id,
        type="oauth",
        provider=profile.provider,
        provider_account_id=profile.provider_account_id,
        access_token=token.get("access_token"),
        refresh_token=token.get("refresh_token"),
        expires_at=token_expires_at(token),
        token_type=token.get("token_type"),
        scope=token.get("scope"),
        id_token=token.get("id_token"),
    )
    s.add(acct)
    s.flush()
    record_event(
        s,
        actor=user,
        action="auth.link_account",
        entity_type="Account",
        entity_id=str(acct.id),
        metadata={"provider": profile.provider},
    )
    return acct


def _refresh_account_tokens(acct: Account, profile: OAuthProfile) -> None:
    token = profile.token or {}
    if not token.get("access_token"):
        return
    acct.access_token = token.get("access_token")
    # Providers only resend a refresh token on first consent.
    if token.get("refresh_token"):
        acct.refresh_token = token.get("refresh_token")
    acct.expires_at = token_expires_at(token)
    acct.token_type = token.get("token_type") or acct.token_type
    acct.scope = token.get("scope") or acct.scope
    acct.id_token = token.get("id_token") or acct.id_token


def resolve_user(s: "Session", profile: OAuthProfile, *, allow_email_linking: bool = False) -> tuple[User, bool]:
    """
    Find or create the user behind an OAuth profile.
    Returns (user, created). Raises SignInError for refused sign-ins.
    """
    acct = (
        s.query(Account)
        .filter(Account.provider == profile.provider)
        .filter(Account.provider_account_id == profile.provider_account_id)
        .one_or_none()
    )
    if acct is not None:
        user = acct.user
        if not user.is_active:
            raise SignInError("AccessDenied", "User is deactivated")
        _refresh_account_tokens(acct, profile)
        return user, False

    if profile.email:
        existing = s.query(User).filter(User.email == profile.email).one_or_none()
        if existing is not None:
            if not allow_email_linking:
                raise SignInError(
                    "OAuthAccountNotLinked",
                    f"{profile.email} already signed in with another provider",
                )
            if not existing.is_active:
                raise SignInError("AccessDenied", "User is deactivated")
            link_account(s, existing, profile)
            return existing, False

    now = datetime.utcnow()
    user = User(
        name=profile.name,
        email=profile.email,
        email_verified=now if profile.email_verified else None,
        image=profile.image,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()
    record_event(
        s,
        actor=user,
        action="user.create",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"provider": profile.provider},
    )
    link_account(s, user, profile)
    return user, True


# ---------- Sessions ----------
def create_session(s: "Session", user: User, *, max_age: int, now: datetime | None = None) -> AuthSession:
    now = now or datetime.utcnow()
    sess = AuthSession(
        session_token=_new_token(),
        user_id=user.id,
        expires=now + timedelta(seconds=max_age),
        created_at=now,
    )
    s.add(sess)
    s.flush()
    return sess


def get_valid_session(
    s: "Session",
    session_token: str,
    *,
    max_age: int,
    update_age: int,
    now: datetime | None = None,
) -> AuthSession | None:
    """
    Resolve a session token. Expired rows are deleted; live rows get a rolling
    expiry bump when the last bump is older than `update_age`. Caller commits.
    """
    if not session_token:
        return None
    now = now or datetime.utcnow()
    sess = s.query(AuthSession).filter(AuthSession.session_token == session_token).one_or_none()
    if sess is None:
        return None
    if sess.expires <= now:
        logger.info("Session expired (user_id=%s); deleting", sess.user_id)
        s.delete(sess)
        return None
    last_bumped = sess.expires - timedelta(seconds=max_age)
    if last_bumped + timedelta(seconds=update_age) < now:
        sess.expires = now + timedelta(seconds=max_age)
    return sess


def delete_session(s: "Session", session_token: str) -> bool:
    result = s.execute(delete(AuthSession).where(AuthSession.session_token == session_token))
    return bool(result.rowcount)


def delete_user_sessions(s: "Session", user: User) -> int:
    result = s.execute(delete(AuthSession).where(AuthSession.user_id == user.id))
    return int(result.rowcount or 0)


# ---------- Verification tokens ----------
def create_verification_token(
    s: "Session", identifier: str, *, ttl_seconds: int = 24 * 60 * 60, now: datetime | None = None
) -> VerificationToken:
    now = now or datetime.utcnow()
    vt = VerificationToken(identifier=identifier, token=_new_token(), expires=now + timedelta(seconds=ttl_seconds))
    s.add(vt)
    s.flush()
    return vt


def use_verification_token(
    s: "Session", identifier: str, token: str, *, now: datetime | None = None
) -> VerificationToken | None:
    """
    Consume a token: it is deleted whether or not it was still valid.
    Returns the token only when it matched and had not expired.
    """
    if not token:
        return None
    now = now or datetime.utcnow()
    vt = (
        s.query(VerificationToken)
        .filter(VerificationToken.identifier == identifier)
        .filter(VerificationToken.token == token)
        .one_or_none()
    )
    if vt is None:
        return None
    s.delete(vt)
    if vt.expires <= now:
        return None
    return vt


def purge_expired(s: "Session", now: datetime | None = None) -> tuple[int, int]:
    """Delete expired sessions and verification tokens. Returns (sessions, tokens)."""
    now = now or datetime.utcnow()
    sessions_deleted = s.execute(delete(AuthSession).where(AuthSession.expires <= now)).rowcount or 0
    tokens_deleted = s.execute(delete(VerificationToken).where(VerificationToken.expires <= now)).rowcount or 0
    return int(sessions_deleted), int(tokens_deleted)
