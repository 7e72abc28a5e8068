from __future__ import annotations

from flask import Blueprint, flash, redirect, render_template, request, session, url_for

from app.stackkit.auth import SESSION_COOKIE_KEY
from app.stackkit.db import db_session
from app.stackkit.guards import current_user, require_login
from app.stackkit.utils import ValidationError
from app.stackkit.modules.users.service import delete_user, update_profile

bp = Blueprint("account", __name__)


@bp.get("/account")
@require_login
def account_get():
    return render_template("account/index.html", user=current_user())


@bp.post("/account")
@require_login
def account_post():
    s = db_session()
    user = current_user()
    payload = {
        "name": request.form.get("name") or "",
        "image": request.form.get("image") or "",
    }
    try:
        update_profile(s, user, payload)
    except ValidationError as e:
        s.rollback()
        for err in e.errors:
            flash(err, "danger")
        return redirect(url_for("account.account_get"))
    s.commit()
    flash("Profile updated.", "success")
    return redirect(url_for("account.account_get"))


@bp.post("/account/delete")
@require_login
def account_delete():
    s = db_session()
    user = current_user()
    confirm = (request.form.get("confirm") or "").strip()
    if confirm != "delete":
        flash('Type "delete" to confirm account deletion.', "danger")
        return redirect(url_for("account.account_get"))
    delete_user(s, user)
    s.commit()
    session.pop(SESSION_COOKIE_KEY, None)
    flash("Your account has been deleted.", "success")
    return redirect(url_for("routes.index"))
