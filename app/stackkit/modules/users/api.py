from __future__ import annotations

from flask import Blueprint, abort, jsonify, request, session

from app.stackkit.auth import SESSION_COOKIE_KEY
from app.stackkit.db import db_session
from app.stackkit.guards import current_user, require_login
from app.stackkit.utils import ValidationError
from app.stackkit.modules.users.service import (
    confirm_deletion_token,
    delete_user,
    request_deletion_token,
    update_profile,
    user_to_dict,
)

bp = Blueprint("users_api", __name__)


def _json_payload() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        abort(400, description="Request body must be a JSON object.")
    payload.pop("csrf_token", None)
    return payload


@bp.get("/users/me")
@require_login
def me_show():
    return jsonify(user_to_dict(current_user()))


@bp.patch("/users/me")
@require_login
def me_update():
    s = db_session()
    user = current_user()
    try:
        update_profile(s, user, _json_payload())
    except ValidationError as e:
        s.rollback()
        return jsonify({"error": "Validation failed.", "errors": e.errors}), 400
    s.commit()
    return jsonify(user_to_dict(user))


@bp.post("/users/me/deletion-token")
@require_login
def me_deletion_token():
    s = db_session()
    vt = request_deletion_token(s, current_user())
    s.commit()
    return jsonify({"token": vt.token, "expires": vt.expires.isoformat()}), 201


@bp.delete("/users/me")
@require_login
def me_delete():
    s = db_session()
    user = current_user()
    raw = _json_payload().get("token")
    token = raw.strip() if isinstance(raw, str) else ""
    if not confirm_deletion_token(s, user, token):
        s.commit()
        return jsonify({"error": "Deletion token missing, invalid or expired."}), 400
    delete_user(s, user)
    s.commit()
    session.pop(SESSION_COOKIE_KEY, None)
    return "", 204
