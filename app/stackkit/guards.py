from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, jsonify, redirect, request, url_for

from app.stackkit.models import User


def is_api_request() -> bool:
    return request.path.startswith("/api/")


def current_user() -> User | None:
    user: User | None = getattr(g, "current_user", None)
    if not user or not user.is_active:
        return None
    return user


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        if current_user() is None:
            if is_api_request():
                return jsonify({"error": "Authentication required."}), 401
            # Unauthenticated page view → sign-in, then come back here.
            nxt = request.full_path or request.path
            # Avoid trailing '?' from full_path when there is no query string.
            if nxt.endswith("?"):
                nxt = nxt[:-1]
            return redirect(url_for("auth.signin", next=nxt))
        return fn(*args, **kwargs)

    return wrapped


def require_owner(user: User | None, owner_id: int) -> None:
    """403 unless `user` owns the record."""
    if user is None or user.id != owner_id:
        g.forbidden_reason = "not_owner"
        abort(403)


def safe_next_url(nxt: str | None) -> str | None:
    # Only allow local paths to avoid open redirects.
    nxt = (nxt or "").strip()
    if nxt.startswith("/") and not nxt.startswith("//") and "\\" not in nxt:
        return nxt
    return None
