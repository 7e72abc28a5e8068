import logging
import os
from datetime import timedelta

from flask import Flask, g, jsonify, render_template, request
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.middleware.proxy_fix import ProxyFix

from app.stackkit.config import load_config
from app.stackkit.db import init_db, teardown_db_session
from app.stackkit.oauth import enabled_providers, init_oauth
from app.stackkit.routes import bp as routes_bp
from app.stackkit.auth import bp as auth_bp, load_current_user
from app.stackkit.modules.posts.api import bp as posts_api_bp
from app.stackkit.modules.posts.pages import bp as posts_bp
from app.stackkit.modules.users.api import bp as users_api_bp
from app.stackkit.modules.users.pages import bp as account_bp

REQUIRED_TABLES = ("users", "accounts", "sessions", "verification_tokens", "posts", "audit_events")
_UNTRACKED_PREFIXES = ("/static/", "/health", "/healthz")


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    logging.getLogger().setLevel(level)


def _wants_json() -> bool:
    return request.path.startswith(("/api/", "/auth/session", "/auth/csrf", "/auth/providers"))


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    _configure_logging(app.config["LOG_LEVEL"])
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(seconds=app.config["SESSION_MAX_AGE"])
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    # Behind a TLS-terminating proxy, OAuth redirect URIs must be built from the forwarded scheme/host.
    hops = app.config["PROXY_FIX_HOPS"]
    if hops:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops, x_host=hops)  # type: ignore[method-assign]

    from app.stackkit.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_globals() -> dict:
        return {
            "csrf_token": ensure_csrf_token(),
            "current_user": getattr(g, "current_user", None),
            "auth_providers": enabled_providers(),
        }

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d %H:%M") -> str:
        if value is None:
            return ""
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNTRACKED_PREFIXES):
            return None
        ensure_csrf_token()
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if not validate_csrf(request):
                app.logger.warning(
                    "CSRF check failed (method=%s path=%s)", request.method, request.path
                )
                if _wants_json():
                    return jsonify({"error": "CSRF token missing or invalid."}), 400
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not os.environ.get("DATABASE_URL"):
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    init_oauth(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(posts_bp)
    app.register_blueprint(account_bp)
    app.register_blueprint(posts_api_bp, url_prefix="/api")
    app.register_blueprint(users_api_bp, url_prefix="/api")

    # Schema health: checked once, on the first tracked request, so migrations
    # (or tests' create_all) may run after the app is built.
    app.config.setdefault("_schema_health_checked", False)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            engine = app.extensions["sqlalchemy_engine"]
            insp = sa_inspect(engine)
            missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        except SQLAlchemyError as e:
            app.logger.exception("Schema health check failed: %s", e)
            missing = ["(database unreachable)"]
        app.config["_schema_health_missing"] = missing
        app.config["_schema_health_checked"] = True
        if missing:
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    @app.before_request
    def _schema_health_guardrail():
        if request.path.startswith(_UNTRACKED_PREFIXES):
            return None
        if not app.config["_schema_health_checked"]:
            _run_schema_health_check()
        missing = app.config["_schema_health_missing"]
        if not missing:
            return None
        # Re-check so a migration run while serving clears the guardrail.
        _run_schema_health_check()
        if app.config["_schema_health_missing"]:
            if _wants_json():
                return jsonify({"error": "Database schema is out of date."}), 503
            return render_template("errors/schema_out_of_date.html", missing=app.config["_schema_health_missing"]), 503
        return None

    def _load_user_wrapper():
        if request.path.startswith(_UNTRACKED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    def _error_response(status: int, message: str, template: str, **ctx):
        if _wants_json():
            return jsonify({"error": message}), status
        return render_template(template, message=message, **ctx), status

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return _error_response(400, getattr(e, "description", None) or "Bad request.", "errors/400.html")

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        reason = getattr(g, "forbidden_reason", None)
        app.logger.warning("Forbidden: reason=%s path=%s request_id=%s", reason, request.path, getattr(g, "request_id", None))
        return _error_response(403, "You do not have access to this resource.", "errors/403.html")

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return _error_response(404, "Not found.", "errors/404.html")

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return _error_response(405, "Method not allowed.", "errors/400.html")

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return _error_response(500, "Internal server error.", "errors/500.html")

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
