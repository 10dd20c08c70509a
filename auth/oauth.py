"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration and identity extraction.

Reads configuration from core.config.get_settings() when the registry is built
to decide which providers are active. Only providers with both client ID and
secret configured get registered.

The identity core never sees provider tokens. This module turns a provider's
token response into an ExternalIdentity(provider, subject, email,
email_verified); AuthService.oauth_login() takes it from there.

Security notes:
  [H1] Email verification is mandatory. An unverified email from a provider
       could belong to an attacker who added a victim's address without
       confirming it. Extraction reports email_verified faithfully and the
       orchestrator refuses unverified identities.

  The state round trip that guards the callback is authlib's job; it keeps
  the value in the Starlette session between redirect and callback.

Providers:
  github -- authorization code, fixed endpoints, emails from the REST API
  google -- authorization code, endpoints from the discovery document
  oidc   -- any issuer reachable through a discovery URL

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import ExternalIdentity
from core.config import Settings, get_settings

logger = logging.getLogger("identity.auth.oauth")

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings | None = None) -> OAuth:
    """Register every provider whose credentials are configured."""
    cfg = settings or get_settings()
    oauth = OAuth()

    # GitHub publishes no discovery document
    if cfg.github_client_id and cfg.github_client_secret:
        oauth.register(
            name="github",
            client_id=cfg.github_client_id,
            client_secret=cfg.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    # Google
    if cfg.google_client_id and cfg.google_client_secret:
        oauth.register(
            name="google",
            client_id=cfg.google_client_id,
            client_secret=cfg.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    # Any other OIDC issuer
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        oauth.register(
            name="oidc",
            client_id=cfg.oidc_client_id,
            client_secret=cfg.oidc_client_secret,
            server_metadata_url=cfg.oidc_discovery_url,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Generic OIDC provider registered (display name: %s)", cfg.oidc_display_name)

    return oauth


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers(settings: Settings | None = None) -> list[dict]:
    """Return [{"name": ..., "label": ...}] for every configured provider."""
    cfg = settings or get_settings()
    providers: list[dict] = []
    if cfg.github_client_id and cfg.github_client_secret:
        providers.append({"name": "github", "label": "GitHub"})
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        providers.append({"name": "oidc", "label": cfg.oidc_display_name})
    return providers


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_external_identity(client, provider: str, token: dict) -> ExternalIdentity:
    """Normalize a provider token response into an ExternalIdentity.

    Args:
        client:   The authlib OAuth client for this provider.
        provider: "github", "google", or "oidc".
        token:    The token dict returned by authlib after code exchange.

    Raises:
        ValueError: If the response has no usable subject or email.
    """
    if provider == "github":
        return await _get_github_identity(client, token)
    elif provider in ("google", "oidc"):
        return _get_oidc_identity(token, provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_identity(client, token: dict) -> ExternalIdentity:
    """Build an identity from GitHub's /user and /user/emails endpoints.

    GitHub does not include the email in the access token, so two API calls
    are required. Only an email flagged both primary and verified counts as
    verified; otherwise the primary email is reported unverified.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    subject = str(profile["id"])

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()
    emails = emails_resp.json()

    primary = next((e for e in emails if e.get("primary")), None)
    if primary is None or not primary.get("email"):
        raise ValueError("GitHub OAuth: account has no primary email address")

    return ExternalIdentity(
        provider="github",
        subject=subject,
        email=primary["email"],
        email_verified=bool(primary.get("verified")),
    )


def _get_oidc_identity(token: dict, provider: str) -> ExternalIdentity:
    """Build an identity from a Google/OIDC id_token's userinfo claims.

    Some OIDC providers omit email_verified entirely -- that counts as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return ExternalIdentity(
        provider=provider,
        subject=str(subject),
        email=email,
        email_verified=bool(userinfo.get("email_verified", False)),
    )
