from flask import Blueprint, render_template
from sqlalchemy import func

from app.stackkit.db import db_session
from app.stackkit.guards import current_user, require_login
from app.stackkit.modules.posts.models import Post

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    s = db_session()
    latest = (
        s.query(Post)
        .filter(Post.published.is_(True))
        .order_by(Post.created_at.desc(), Post.id.desc())
        .limit(5)
        .all()
    )
    return render_template("public/index.html", latest=latest)


@bp.get("/dashboard")
@require_login
def dashboard():
    s = db_session()
    user = current_user()
    counts = dict(
        s.query(Post.published, func.count(Post.id))
        .filter(Post.author_id == user.id)
        .group_by(Post.published)
        .all()
    )
    recent = (
        s.query(Post)
        .filter(Post.author_id == user.id)
        .order_by(Post.updated_at.desc(), Post.id.desc())
        .limit(5)
        .all()
    )
    return render_template(
        "dashboard/index.html",
        user=user,
        published_count=counts.get(True, 0),
        draft_count=counts.get(False, 0),
        recent=recent,
    )


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast liveness probe. No DB access, minimal overhead.
    """
    return "ok", 200
