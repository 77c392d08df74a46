"""
auth/oauth.py -- Authlib OAuth provider registry and identity extraction.

The engine itself never talks to a provider during login: AuthService.oauth_login()
trusts an (email, name) pair the caller has already verified. This module is
that caller's half -- it runs the authorization-code flow and turns a provider
token into a verified identity.

Only providers with both client ID and secret configured get registered.

Security notes:
  [H1] Email verification is mandatory. get_oauth_identity() raises ValueError
       if the provider does not confirm the email is verified. An unverified
       email from GitHub could belong to an attacker who added a victim's
       address without confirming it.

  OAuth state (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware. The session stores the state between the authorization
  redirect and the callback.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import Settings

logger = logging.getLogger("tenantauth.auth.oauth")

PROVIDER_LABELS = {"github": "GitHub", "google": "Google"}


def build_oauth(settings: Settings) -> OAuth:
    """Return an OAuth registry holding every configured provider."""
    oauth = OAuth()

    # GitHub -- static endpoints (no OIDC discovery document)
    if settings.github_client_id and settings.github_client_secret:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    # Google -- OIDC discovery
    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    return oauth


def enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name": ..., "label": ...}] for each provider with credentials set."""
    providers: list[dict] = []
    if settings.github_client_id and settings.github_client_secret:
        providers.append({"name": "github", "label": PROVIDER_LABELS["github"]})
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": PROVIDER_LABELS["google"]})
    return providers


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_oauth_identity(client, provider: str, token: dict) -> tuple[str, str]:
    """Extract (verified email, display name) from a provider token response.

    Raises:
        ValueError: If a verified email cannot be confirmed, or the provider
            is unknown. The caller treats this as an authentication failure.
    """
    if provider == "github":
        return await _get_github_identity(client, token)
    elif provider == "google":
        return _get_google_identity(token)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_identity(client, token: dict) -> tuple[str, str]:
    """GitHub does not put the email in the token. Two API calls are needed:
    GET /user for the profile name, GET /user/emails for the primary verified
    address. [H1] Only an entry with primary=true AND verified=true counts.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    name = profile.get("name") or profile.get("login") or ""

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before logging in."
        )
    return email, name


def _get_google_identity(token: dict) -> tuple[str, str]:
    """[H1] The id_token email is accepted only when email_verified is True.
    A missing email_verified claim counts as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("google OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            "google OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    if not email:
        raise ValueError("google OAuth: missing email claim in userinfo")

    name = userinfo.get("name") or " ".join(
        part for part in (userinfo.get("given_name"), userinfo.get("family_name")) if part
    )
    return email, name
