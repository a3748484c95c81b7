"""OIDC discovery and token validation.

Tokens are issued by the separate ConsentHub auth service; this API only
validates them.

In production mode:
- Fetches JWKS from the OIDC discovery document
- Validates JWT signature against the public key set
- Caches JWKS with a TTL (5 minutes) to avoid hammering the IdP

In dev/test mode:
- Validates JWTs using the symmetric DEV_JWT_SECRET (HS256)
- Skips JWKS fetch entirely
- Logs a loud warning once

Required JWT claims:
  - sub: string - user ID; for customers this is the DSAR requesterId
  - role: string - customer / csr / admin
  - exp: int - expiration timestamp
  - aud: string|list - must include OIDC_AUDIENCE

Optional claims:
  - email: string
  - name: string
"""

from __future__ import annotations

import json
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
import jwt
import structlog
from jwt.exceptions import DecodeError, InvalidTokenError

from consenthub.config import Settings

log = structlog.get_logger(__name__)

# JWKS cache: dict of kid -> key material, plus a fetch timestamp
_jwks_cache: dict[str, Any] = {}
_jwks_fetched_at: float = 0.0
_JWKS_TTL_SECONDS = 300

REQUIRED_CLAIMS = ("sub", "role")


class TokenValidationError(Exception):
    """Raised when a JWT cannot be validated."""


async def _fetch_jwks(issuer_url: str, timeout: float) -> dict[str, Any]:
    """Fetch JWKS from the OIDC discovery endpoint via HTTP."""
    discovery_url = f"{issuer_url.rstrip('/')}/.well-known/openid-configuration"
    async with httpx.AsyncClient(timeout=timeout) as client:
        discovery = await client.get(discovery_url)
        discovery.raise_for_status()
        jwks_uri = discovery.json()["jwks_uri"]

        jwks_response = await client.get(jwks_uri)
        jwks_response.raise_for_status()
        return jwks_response.json()  # type: ignore[no-any-return]


def _load_local_jwks(path: str) -> dict[str, Any]:
    """Load JWKS from a local file (air-gapped / offline mode).

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is missing the 'keys' array.
    """
    jwks_path = Path(path)
    if not jwks_path.exists():
        raise FileNotFoundError(f"JWKS local file not found: {path}")

    raw = json.loads(jwks_path.read_text(encoding="utf-8"))
    if "keys" not in raw:
        raise ValueError(f"JWKS file at {path!r} is missing the 'keys' array")
    log.warning("oidc.local_jwks_mode_active", jwks_local_path=path)
    return raw  # type: ignore[no-any-return]


async def _get_jwks(settings: Settings) -> dict[str, Any]:
    """Return cached JWKS or fetch/load a fresh copy."""
    global _jwks_cache, _jwks_fetched_at
    now = time.monotonic()
    if not _jwks_cache or (now - _jwks_fetched_at) > _JWKS_TTL_SECONDS:
        try:
            if settings.jwks_local_path:
                raw = _load_local_jwks(settings.jwks_local_path)
            else:
                raw = await _fetch_jwks(settings.oidc_issuer_url, settings.http_timeout_seconds)
        except (httpx.HTTPError, OSError, ValueError, KeyError) as exc:
            log.error("oidc.jwks_unavailable", error=str(exc))
            raise TokenValidationError(f"JWKS unavailable: {exc}") from exc
        _jwks_cache = {key["kid"]: key for key in raw.get("keys", []) if "kid" in key}
        _jwks_fetched_at = now
        log.info("oidc.jwks_refreshed", key_count=len(_jwks_cache))
    return _jwks_cache


def reset_jwks_cache() -> None:
    global _jwks_cache, _jwks_fetched_at
    _jwks_cache = {}
    _jwks_fetched_at = 0.0


async def validate_token(token: str, settings: Settings) -> dict[str, Any]:
    """Validate a JWT and return its claims.

    Raises TokenValidationError if the token is invalid, expired, has an
    incorrect audience/issuer, or lacks a required claim.
    """
    if settings.is_dev:
        return _validate_dev_token(token, settings)

    try:
        header = jwt.get_unverified_header(token)
    except (DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"Cannot decode token header: {exc}") from exc
    kid = header.get("kid")

    jwks = await _get_jwks(settings)
    if kid and kid in jwks:
        key_data = jwks[kid]
    elif len(jwks) == 1:
        key_data = next(iter(jwks.values()))
    else:
        raise TokenValidationError("No matching JWKS key for token")

    try:
        signing_key = jwt.PyJWK(key_data)
        claims: dict[str, Any] = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256", "ES256"],
            audience=settings.oidc_audience,
            issuer=settings.oidc_issuer_url,
            options={"verify_exp": True, "verify_iat": True},
        )
    except (DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"Token validation failed: {exc}") from exc

    _assert_required_claims(claims)
    return claims


_dev_mode_warned = False


def _validate_dev_token(token: str, settings: Settings) -> dict[str, Any]:
    """Validate JWT using symmetric secret (dev only)."""
    global _dev_mode_warned
    if not _dev_mode_warned:
        log.warning(
            "oidc.dev_mode_validation",
            message="Using symmetric JWT secret - NOT for production",
        )
        _dev_mode_warned = True
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            settings.dev_jwt_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.oidc_audience,
            options={"verify_exp": True, "verify_aud": True},
        )
    except (DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"Dev token validation failed: {exc}") from exc

    _assert_required_claims(claims)
    return claims


def _assert_required_claims(claims: dict[str, Any]) -> None:
    missing = [c for c in REQUIRED_CLAIMS if not claims.get(c)]
    if missing:
        raise TokenValidationError(f"Missing required JWT claims: {missing}")


def create_dev_token(
    *,
    sub: str,
    role: str = "customer",
    email: str = "",
    name: str = "",
    secret: str,
    audience: str = "consenthub-api",
    expires_in: int = 3600,
) -> str:
    """Create a dev JWT (HS256) for local testing.

    Never call this in production code.
    """
    now = int(datetime.now(UTC).timestamp())
    payload = {
        "sub": sub,
        "role": role,
        "email": email,
        "name": name,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")
