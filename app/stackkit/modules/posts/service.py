from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import false, or_

from app.stackkit.audit import record_event
from app.stackkit.modules.posts.models import Post
from app.stackkit.utils import ValidationError, like_pattern

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.stackkit.models import User


TITLE_MAX_LENGTH = 200
CONTENT_MAX_LENGTH = 20_000
DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100

_FIELDS = ("title", "content", "published")


@dataclass
class Page:
    items: list[Post]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        return max(1, math.ceil(self.total / self.per_page)) if self.per_page else 1

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.pages

    def to_dict(self) -> dict:
        return {
            "items": [p.to_dict() for p in self.items],
            "total": self.total,
            "page": self.page,
            "per_page": self.per_page,
            "pages": self.pages,
        }


def validate_post_payload(payload: dict[str, Any], *, partial: bool = False) -> list[str]:
    """Validate post creation/update payload. Returns list of errors."""
    errors: list[str] = []
    unknown = sorted(set(payload) - set(_FIELDS) - {"csrf_token"})
    if unknown:
        errors.append(f"Unknown field(s): {', '.join(unknown)}")

    if "title" in payload or not partial:
        title = payload.get("title")
        if title is not None and not isinstance(title, str):
            errors.append("Title must be a string.")
        elif not (title or "").strip():
            errors.append("Title is required.")
        elif len(title.strip()) > TITLE_MAX_LENGTH:
            errors.append(f"Title must be at most {TITLE_MAX_LENGTH} characters.")

    content = payload.get("content")
    if content is not None:
        if not isinstance(content, str):
            errors.append("Content must be a string.")
        elif len(content) > CONTENT_MAX_LENGTH:
            errors.append(f"Content must be at most {CONTENT_MAX_LENGTH} characters.")

    if "published" in payload and not isinstance(payload["published"], bool):
        errors.append("Published must be true or false.")
    return errors


def can_view(post: Post, viewer: "User | None") -> bool:
    return post.published or (viewer is not None and viewer.id == post.author_id)


def create_post(s: "Session", payload: dict[str, Any], user: "User") -> Post:
    errors = validate_post_payload(payload)
    if errors:
        raise ValidationError(errors)

    now = datetime.utcnow()
    post = Post(
        title=payload["title"].strip(),
        content=(payload.get("content") or "").strip() or None,
        published=bool(payload.get("published", False)),
        author_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(post)
    s.flush()

    record_event(
        s,
        actor=user,
        action="post.create",
        entity_type="Post",
        entity_id=str(post.id),
        metadata={"title": post.title, "published": post.published},
    )
    return post


def update_post(s: "Session", post: Post, payload: dict[str, Any], user: "User") -> Post:
    """Partial update: only keys present in `payload` are touched."""
    errors = validate_post_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)

    changes: dict[str, dict[str, Any]] = {}
    if "title" in payload:
        new_title = payload["title"].strip()
        if new_title != post.title:
            changes["title"] = {"old": post.title, "new": new_title}
            post.title = new_title

    if "content" in payload:
        new_content = (payload.get("content") or "").strip() or None
        if new_content != post.content:
            # Bodies can be large; record only that it changed.
            changes["content"] = {"changed": True}
            post.content = new_content

    if "published" in payload and payload["published"] != post.published:
        changes["published"] = {"old": post.published, "new": payload["published"]}
        post.published = payload["published"]

    if changes:
        post.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="post.edit",
            entity_type="Post",
            entity_id=str(post.id),
            metadata={"title": post.title, "changes": changes},
        )
    return post


def delete_post(s: "Session", post: Post, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="post.delete",
        entity_type="Post",
        entity_id=str(post.id),
        metadata={"title": post.title},
    )
    s.delete(post)


def visible_posts_query(s: "Session", viewer: "User | None", *, mine: bool = False, search: str = "") -> "Query":
    q = s.query(Post)
    if mine:
        # Anonymous callers own nothing.
        q = q.filter(Post.author_id == viewer.id) if viewer is not None else q.filter(false())
    elif viewer is not None:
        q = q.filter(or_(Post.published.is_(True), Post.author_id == viewer.id))
    else:
        q = q.filter(Post.published.is_(True))

    search = (search or "").strip()
    if search:
        like = like_pattern(search)
        q = q.filter(or_(Post.title.ilike(like, escape="\\"), Post.content.ilike(like, escape="\\")))
    return q.order_by(Post.created_at.desc(), Post.id.desc())


def parse_page_args(page_raw: str | None, per_page_raw: str | None) -> tuple[int, int]:
    """Lenient paging args: junk falls back to defaults, per_page is clamped."""
    try:
        page = max(1, int(page_raw or 1))
    except ValueError:
        page = 1
    try:
        per_page = int(per_page_raw or DEFAULT_PER_PAGE)
    except ValueError:
        per_page = DEFAULT_PER_PAGE
    return page, min(max(1, per_page), MAX_PER_PAGE)


def paginate(q: "Query", page: int, per_page: int) -> Page:
    total = q.order_by(None).count()
    items = q.offset((page - 1) * per_page).limit(per_page).all()
    return Page(items=items, total=total, page=page, per_page=per_page)
