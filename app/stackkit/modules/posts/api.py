from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from app.stackkit.db import db_session
from app.stackkit.guards import current_user, require_login, require_owner
from app.stackkit.modules.posts.models import Post
from app.stackkit.modules.posts.service import (
    can_view,
    create_post,
    delete_post,
    paginate,
    parse_page_args,
    update_post,
    visible_posts_query,
)
from app.stackkit.utils import ValidationError, parse_flag

bp = Blueprint("posts_api", __name__)


def _json_payload() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        abort(400, description="Request body must be a JSON object.")
    payload.pop("csrf_token", None)
    return payload


def _get_visible_post(post_id: int) -> Post:
    post = db_session().get(Post, post_id)
    # Drafts of other users are indistinguishable from missing posts.
    if post is None or not can_view(post, current_user()):
        abort(404)
    return post


@bp.get("/posts")
def posts_index():
    s = db_session()
    page, per_page = parse_page_args(request.args.get("page"), request.args.get("per_page"))
    q = visible_posts_query(
        s,
        current_user(),
        mine=parse_flag(request.args.get("mine")),
        search=request.args.get("q") or "",
    )
    return jsonify(paginate(q, page, per_page).to_dict())


@bp.post("/posts")
@require_login
def posts_create():
    s = db_session()
    try:
        post = create_post(s, _json_payload(), current_user())
    except ValidationError as e:
        s.rollback()
        return jsonify({"error": "Validation failed.", "errors": e.errors}), 400
    s.commit()
    return jsonify(post.to_dict()), 201


@bp.get("/posts/<int:post_id>")
def posts_show(post_id: int):
    return jsonify(_get_visible_post(post_id).to_dict())


@bp.route("/posts/<int:post_id>", methods=["PATCH", "PUT"])
@require_login
def posts_update(post_id: int):
    s = db_session()
    post = _get_visible_post(post_id)
    require_owner(current_user(), post.author_id)
    try:
        update_post(s, post, _json_payload(), current_user())
    except ValidationError as e:
        s.rollback()
        return jsonify({"error": "Validation failed.", "errors": e.errors}), 400
    s.commit()
    return jsonify(post.to_dict())


@bp.delete("/posts/<int:post_id>")
@require_login
def posts_delete(post_id: int):
    s = db_session()
    post = _get_visible_post(post_id)
    require_owner(current_user(), post.author_id)
    delete_post(s, post, current_user())
    s.commit()
    return "", 204
