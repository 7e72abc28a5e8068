import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    google_client_id: str
    google_client_secret: str
    github_client_id: str
    github_client_secret: str

    session_max_age: int
    session_update_age: int
    allow_email_account_linking: bool
    proxy_fix_hops: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer number of seconds (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///stackkit.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        google_client_id=_getenv("GOOGLE_CLIENT_ID"),
        google_client_secret=_getenv("GOOGLE_CLIENT_SECRET"),
        github_client_id=_getenv("GITHUB_CLIENT_ID"),
        github_client_secret=_getenv("GITHUB_CLIENT_SECRET"),
        session_max_age=_getenv_int("SESSION_MAX_AGE", 30 * 24 * 60 * 60),
        session_update_age=_getenv_int("SESSION_UPDATE_AGE", 24 * 60 * 60),
        allow_email_account_linking=_getenv("ALLOW_EMAIL_ACCOUNT_LINKING") == "1",
        proxy_fix_hops=_getenv_int("PROXY_FIX_HOPS", 0),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "GOOGLE_CLIENT_ID": s.google_client_id,
        "GOOGLE_CLIENT_SECRET": s.google_client_secret,
        "GITHUB_CLIENT_ID": s.github_client_id,
        "GITHUB_CLIENT_SECRET": s.github_client_secret,
        "SESSION_MAX_AGE": s.session_max_age,
        "SESSION_UPDATE_AGE": s.session_update_age,
        "ALLOW_EMAIL_ACCOUNT_LINKING": s.allow_email_account_linking,
        "PROXY_FIX_HOPS": s.proxy_fix_hops,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "MAX_CONTENT_LENGTH": 2 * 1024 * 1024,
    }
