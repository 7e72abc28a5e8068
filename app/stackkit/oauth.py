"""
OAuth provider wiring (Authlib Flask client).

Providers are registered only when both client id and secret are configured.
Everything protocol-related (state, PKCE/nonce, token exchange, id_token
validation) stays inside Authlib; this module turns the provider's reply into
an `OAuthProfile` the identity layer can store.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from authlib.integrations.base_client import OAuthError as ProviderError
from authlib.integrations.flask_client import OAuth
from flask import Flask, current_app


@dataclass(frozen=True)
class ProviderSpec:
    id: str
    name: str
    register_kwargs: dict[str, Any]


PROVIDERS: dict[str, ProviderSpec] = {
    "google": ProviderSpec(
        id="google",
        name="Google",
        register_kwargs={
            "server_metadata_url": "https://accounts.google.com/.well-known/openid-configuration",
            "client_kwargs": {"scope": "openid email profile"},
        },
    ),
    "github": ProviderSpec(
        id="github",
        name="GitHub",
        register_kwargs={
            "access_token_url": "https://github.com/login/oauth/access_token",
            "authorize_url": "https://github.com/login/oauth/authorize",
            "api_base_url": "https://api.github.com/",
            "client_kwargs": {"scope": "read:user user:email"},
        },
    ),
}


class SignInError(Exception):
    """Sign-in failed; `code` is shown on the sign-in page (e.g. "OAuthCallback")."""

    def __init__(self, code: str, message: str | None = None):
        super().__init__(message or code)
        self.code = code


@dataclass
class OAuthProfile:
    provider: str
    provider_account_id: str
    email: str | None = None
    email_verified: bool = False
    name: str | None = None
    image: str | None = None
    token: dict[str, Any] = field(default_factory=dict)


def init_oauth(app: Flask) -> OAuth:
    oauth = OAuth(app)
    enabled: list[str] = []
    for spec in PROVIDERS.values():
        prefix = spec.id.upper()
        client_id = app.config.get(f"{prefix}_CLIENT_ID")
        client_secret = app.config.get(f"{prefix}_CLIENT_SECRET")
        if not client_id or not client_secret:
            continue
        oauth.register(name=spec.id, client_id=client_id, client_secret=client_secret, **spec.register_kwargs)
        enabled.append(spec.id)
    app.extensions["stackkit_oauth"] = oauth
    app.extensions["stackkit_providers"] = enabled
    if enabled:
        app.logger.info("OAuth providers enabled: %s", ", ".join(enabled))
    else:
        app.logger.warning("No OAuth providers configured; sign-in is unavailable.")
    return oauth


def enabled_providers() -> list[ProviderSpec]:
    return [PROVIDERS[pid] for pid in current_app.extensions.get("stackkit_providers", [])]


def get_provider(provider_id: str) -> ProviderSpec | None:
    if provider_id not in current_app.extensions.get("stackkit_providers", []):
        return None
    return PROVIDERS[provider_id]


def _client(provider_id: str):
    oauth: OAuth = current_app.extensions["stackkit_oauth"]
    client = oauth.create_client(provider_id)
    if client is None:
        raise SignInError("Configuration", f"OAuth provider {provider_id!r} is not registered")
    return client


def begin_authorization(provider_id: str, redirect_uri: str):
    """Redirect response to the provider's consent screen."""
    return _client(provider_id).authorize_redirect(redirect_uri)


def fetch_profile(provider_id: str) -> OAuthProfile:
    """
    Complete the authorization-code exchange for the current callback request
    and return the normalized profile.
    """
    client = _client(provider_id)
    try:
        token = client.authorize_access_token()
        if provider_id == "google":
            info = token.get("userinfo") or client.userinfo(token=token)
            return profile_from_google(info, token)
        if provider_id == "github":
            info = client.get("user", token=token).json()
            emails: list[dict[str, Any]] = []
            if not info.get("email"):
                emails = client.get("user/emails", token=token).json() or []
            return profile_from_github(info, emails, token)
    except ProviderError as e:
        current_app.logger.warning("OAuth callback error from %s: %s", provider_id, e)
        if getattr(e, "error", None) == "access_denied":
            raise SignInError("AccessDenied", str(e)) from e
        raise SignInError("OAuthCallback", str(e)) from e
    raise SignInError("Configuration", f"No profile mapping for provider {provider_id!r}")


def profile_from_google(info: dict[str, Any], token: dict[str, Any] | None = None) -> OAuthProfile:
    sub = info.get("sub")
    if not sub:
        raise SignInError("OAuthCallback", "Google profile has no subject")
    email = (info.get("email") or "").strip().lower() or None
    return OAuthProfile(
        provider="google",
        provider_account_id=str(sub),
        email=email,
        email_verified=bool(info.get("email_verified")) and email is not None,
        name=info.get("name"),
        image=info.get("picture"),
        token=dict(token or {}),
    )


def profile_from_github(
    info: dict[str, Any],
    emails: list[dict[str, Any]] | None = None,
    token: dict[str, Any] | None = None,
) -> OAuthProfile:
    account_id = info.get("id")
    if account_id is None:
        raise SignInError("OAuthCallback", "GitHub profile has no id")
    email = (info.get("email") or "").strip().lower() or None
    verified = False
    if not email:
        for entry in emails or []:
            if entry.get("primary") and entry.get("verified"):
                email = (entry.get("email") or "").strip().lower() or None
                verified = email is not None
                break
    return OAuthProfile(
        provider="github",
        provider_account_id=str(account_id),
        email=email,
        email_verified=verified,
        name=info.get("name") or info.get("login"),
        image=info.get("avatar_url"),
        token=dict(token or {}),
    )


def token_expires_at(token: dict[str, Any]) -> int | None:
    if token.get("expires_at") is not None:
        return int(token["expires_at"])
    if token.get("expires_in") is not None:
        return int(datetime.utcnow().timestamp()) + int(token["expires_in"])
    return None
