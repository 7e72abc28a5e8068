from __future__ import annotations

from flask import Blueprint, abort, flash, redirect, render_template, request, url_for

from app.stackkit.db import db_session
from app.stackkit.guards import current_user, require_login, require_owner
from app.stackkit.modules.posts.models import Post
from app.stackkit.modules.posts.service import (
    CONTENT_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    can_view,
    create_post,
    delete_post,
    paginate,
    parse_page_args,
    update_post,
    visible_posts_query,
)
from app.stackkit.utils import ValidationError, parse_flag

bp = Blueprint("posts", __name__)


def _form_payload() -> dict:
    return {
        "title": request.form.get("title") or "",
        "content": request.form.get("content") or "",
        "published": request.form.get("published") in ("on", "1", "true"),
    }


def _get_visible_post(post_id: int) -> Post:
    post = db_session().get(Post, post_id)
    if post is None or not can_view(post, current_user()):
        abort(404)
    return post


# ---------- List ----------
@bp.get("/posts")
def posts_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    mine = parse_flag(request.args.get("mine"))
    page, per_page = parse_page_args(request.args.get("page"), request.args.get("per_page"))
    result = paginate(visible_posts_query(s, current_user(), mine=mine, search=search), page, per_page)
    return render_template("posts/list.html", page=result, search=search, mine=mine)


# ---------- New ----------
@bp.get("/posts/new")
@require_login
def posts_new_get():
    return render_template(
        "posts/form.html", post=None, form={}, title_max=TITLE_MAX_LENGTH, content_max=CONTENT_MAX_LENGTH
    )


@bp.post("/posts/new")
@require_login
def posts_new_post():
    s = db_session()
    payload = _form_payload()
    try:
        post = create_post(s, payload, current_user())
    except ValidationError as e:
        s.rollback()
        for err in e.errors:
            flash(err, "danger")
        return (
            render_template(
                "posts/form.html", post=None, form=payload, title_max=TITLE_MAX_LENGTH, content_max=CONTENT_MAX_LENGTH
            ),
            400,
        )
    s.commit()
    flash("Post created.", "success")
    return redirect(url_for("posts.post_detail", post_id=post.id))


# ---------- Detail ----------
@bp.get("/posts/<int:post_id>")
def post_detail(post_id: int):
    post = _get_visible_post(post_id)
    user = current_user()
    return render_template("posts/detail.html", post=post, is_owner=bool(user and user.id == post.author_id))


# ---------- Edit ----------
@bp.get("/posts/<int:post_id>/edit")
@require_login
def post_edit_get(post_id: int):
    post = _get_visible_post(post_id)
    require_owner(current_user(), post.author_id)
    form = {"title": post.title, "content": post.content or "", "published": post.published}
    return render_template(
        "posts/form.html", post=post, form=form, title_max=TITLE_MAX_LENGTH, content_max=CONTENT_MAX_LENGTH
    )


@bp.post("/posts/<int:post_id>/edit")
@require_login
def post_edit_post(post_id: int):
    s = db_session()
    post = _get_visible_post(post_id)
    require_owner(current_user(), post.author_id)
    payload = _form_payload()
    try:
        update_post(s, post, payload, current_user())
    except ValidationError as e:
        s.rollback()
        for err in e.errors:
            flash(err, "danger")
        return (
            render_template(
                "posts/form.html", post=post, form=payload, title_max=TITLE_MAX_LENGTH, content_max=CONTENT_MAX_LENGTH
            ),
            400,
        )
    s.commit()
    flash("Post updated.", "success")
    return redirect(url_for("posts.post_detail", post_id=post.id))


# ---------- Delete ----------
@bp.post("/posts/<int:post_id>/delete")
@require_login
def post_delete(post_id: int):
    s = db_session()
    post = _get_visible_post(post_id)
    require_owner(current_user(), post.author_id)
    delete_post(s, post, current_user())
    s.commit()
    flash("Post deleted.", "success")
    return redirect(url_for("posts.posts_list", mine=1))
