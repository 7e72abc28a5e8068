from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.stackkit.audit import record_event
from app.stackkit.identity import create_verification_token, use_verification_token
from app.stackkit.utils import ValidationError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.stackkit.models import User, VerificationToken


NAME_MAX_LENGTH = 255
IMAGE_MAX_LENGTH = 1024
DELETION_TOKEN_TTL = 10 * 60  # seconds


def user_to_dict(user: "User") -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "email_verified": user.email_verified.isoformat() if user.email_verified else None,
        "image": user.image,
        "providers": sorted(a.provider for a in user.accounts),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def validate_profile_payload(payload: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    unknown = sorted(set(payload) - {"name", "image"})
    if unknown:
        errors.append(f"Unknown field(s): {', '.join(unknown)}")
    name = payload.get("name")
    if name is not None:
        if not isinstance(name, str):
            errors.append("Name must be a string.")
        elif len(name.strip()) > NAME_MAX_LENGTH:
            errors.append(f"Name must be at most {NAME_MAX_LENGTH} characters.")
    image = payload.get("image")
    if image is not None:
        if not isinstance(image, str):
            errors.append("Image must be a string.")
        elif image.strip() and not image.strip().startswith(("https://", "http://")):
            errors.append("Image must be an http(s) URL.")
        elif len(image.strip()) > IMAGE_MAX_LENGTH:
            errors.append(f"Image URL must be at most {IMAGE_MAX_LENGTH} characters.")
    return errors


def update_profile(s: "Session", user: "User", payload: dict[str, Any]) -> "User":
    errors = validate_profile_payload(payload)
    if errors:
        raise ValidationError(errors)

    changes: dict[str, dict[str, Any]] = {}
    for key in ("name", "image"):
        if key not in payload:
            continue
        new_value = (payload.get(key) or "").strip() or None
        if new_value != getattr(user, key):
            changes[key] = {"old": getattr(user, key), "new": new_value}
            setattr(user, key, new_value)

    if changes:
        user.updated_at = datetime.utcnow()
        record_event(s, actor=user, action="user.edit", entity_type="User", entity_id=str(user.id), metadata=changes)
    return user


def _deletion_identifier(user: "User") -> str:
    return f"delete-account:{user.id}"


def request_deletion_token(s: "Session", user: "User") -> "VerificationToken":
    return create_verification_token(s, _deletion_identifier(user), ttl_seconds=DELETION_TOKEN_TTL)


def confirm_deletion_token(s: "Session", user: "User", token: str) -> bool:
    return use_verification_token(s, _deletion_identifier(user), token) is not None


def delete_user(s: "Session", user: "User") -> None:
    """
    Delete the user. Accounts, sessions and posts go with it (ON DELETE CASCADE);
    audit rows keep the email but lose the foreign key.
    """
    record_event(
        s,
        actor=user,
        action="user.delete",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": user.email},
    )
    s.flush()
    s.delete(user)
