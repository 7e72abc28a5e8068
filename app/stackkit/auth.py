from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, abort, current_app, g, jsonify, redirect, render_template, request, session, url_for
from sqlalchemy.exc import SQLAlchemyError

from app.stackkit.audit import record_event
from app.stackkit.db import db_session
from app.stackkit.guards import safe_next_url
from app.stackkit.identity import create_session, delete_session, delete_user_sessions, get_valid_session, resolve_user
from app.stackkit.oauth import SignInError, begin_authorization, enabled_providers, fetch_profile, get_provider
from app.stackkit.security import ensure_csrf_token

bp = Blueprint("auth", __name__)
_signin_attempts: dict[str, list[datetime]] = defaultdict(list)
_SIGNIN_RATE_LIMIT = 5
_SIGNIN_RATE_WINDOW = 300  # seconds

SESSION_COOKIE_KEY = "session_token"


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_SIGNIN_RATE_WINDOW)
    _signin_attempts[ip] = [t for t in _signin_attempts[ip] if t > cutoff]
    return len(_signin_attempts[ip]) >= _SIGNIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _signin_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Resolves g.current_user from the session token in the signed cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    g.auth_session = None

    token = session.get(SESSION_COOKIE_KEY)
    if not token:
        return

    s = db_session()
    try:
        sess = get_valid_session(
            s,
            token,
            max_age=current_app.config["SESSION_MAX_AGE"],
            update_age=current_app.config["SESSION_UPDATE_AGE"],
        )
        s.commit()
    except SQLAlchemyError as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        s.rollback()
        session.pop(SESSION_COOKIE_KEY, None)
        return

    if sess is None or not sess.user.is_active:
        session.pop(SESSION_COOKIE_KEY, None)
        return
    g.current_user = sess.user
    g.auth_session = sess


def _provider_payload(spec) -> dict:
    return {
        "id": spec.id,
        "name": spec.name,
        "signin_url": url_for("auth.signin_provider", provider_id=spec.id, _external=True),
        "callback_url": url_for("auth.callback", provider_id=spec.id, _external=True),
    }


@bp.get("/providers")
def providers():
    return jsonify({spec.id: _provider_payload(spec) for spec in enabled_providers()})


@bp.get("/csrf")
def csrf():
    return jsonify({"csrf_token": ensure_csrf_token()})


@bp.get("/signin")
def signin():
    nxt = safe_next_url(request.args.get("next")) or ""
    error = (request.args.get("error") or "").strip() or None
    if getattr(g, "current_user", None) and not error:
        return redirect(nxt or url_for("routes.dashboard"))
    return render_template("auth/signin.html", providers=enabled_providers(), next=nxt, error=error)


@bp.get("/signin/<provider_id>")
def signin_provider(provider_id: str):
    if get_provider(provider_id) is None:
        abort(404)

    ip = request.remote_addr or "unknown"
    if _check_rate_limit(ip):
        current_app.logger.warning("Sign-in rate limit hit (ip=%s request_id=%s)", ip, g.request_id)
        return redirect(url_for("auth.signin", error="RateLimited"))
    _record_attempt(ip)

    session["auth_next"] = safe_next_url(request.args.get("next"))
    redirect_uri = url_for("auth.callback", provider_id=provider_id, _external=True)
    return begin_authorization(provider_id, redirect_uri)


@bp.get("/callback/<provider_id>")
def callback(provider_id: str):
    if get_provider(provider_id) is None:
        abort(404)

    s = db_session()
    nxt = session.pop("auth_next", None)
    try:
        if request.args.get("error"):
            code = "AccessDenied" if request.args.get("error") == "access_denied" else "OAuthCallback"
            raise SignInError(code, request.args.get("error_description") or request.args["error"])
        profile = fetch_profile(provider_id)
        user, created = resolve_user(
            s,
            profile,
            allow_email_linking=bool(current_app.config.get("ALLOW_EMAIL_ACCOUNT_LINKING")),
        )
        auth_session = create_session(s, user, max_age=current_app.config["SESSION_MAX_AGE"])
        record_event(
            s,
            actor=user,
            action="auth.signin",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"provider": provider_id, "new_user": created},
        )
        s.commit()
    except SignInError as e:
        s.rollback()
        current_app.logger.info(
            "Sign-in refused (provider=%s code=%s request_id=%s): %s", provider_id, e.code, g.request_id, e
        )
        record_event(
            s,
            actor=None,
            action="auth.signin_failed",
            entity_type="Account",
            entity_id=provider_id,
            reason=e.code,
            metadata={"provider": provider_id, "detail": str(e)},
        )
        s.commit()
        return redirect(url_for("auth.signin", error=e.code))

    # Fresh cookie contents on privilege change.
    csrf_token = session.get("csrf_token")
    session.clear()
    if csrf_token:
        session["csrf_token"] = csrf_token
    session[SESSION_COOKIE_KEY] = auth_session.session_token
    session.permanent = True
    current_app.logger.info("User %s signed in via %s (request_id=%s)", user.id, provider_id, g.request_id)
    return redirect(nxt or url_for("routes.dashboard"))


@bp.post("/signout")
def signout():
    s = db_session()
    user = getattr(g, "current_user", None)
    token = session.get(SESSION_COOKIE_KEY)
    everywhere = (request.form.get("everywhere") or "") == "1"
    if user is not None:
        if everywhere:
            delete_user_sessions(s, user)
        elif token:
            delete_session(s, token)
        record_event(
            s,
            actor=user,
            action="auth.signout",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"everywhere": everywhere},
        )
        s.commit()
    session.pop(SESSION_COOKIE_KEY, None)
    return redirect(url_for("routes.index"))


@bp.get("/session")
def current_session():
    user = getattr(g, "current_user", None)
    auth_session = getattr(g, "auth_session", None)
    if user is None or auth_session is None:
        return jsonify({})
    return jsonify(
        {
            "user": {"id": user.id, "name": user.name, "email": user.email, "image": user.image},
            "expires": auth_session.expires.isoformat(),
        }
    )
