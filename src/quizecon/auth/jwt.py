"""
Verification of bearer tokens issued by the external auth provider.

HS* algorithms verify with ``jwt_secret``; RS*/ES* algorithms verify with the
public key at ``jwt_public_key_path``. ``create_access_token`` signs with the
shared secret and exists for local development and tests.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import jwt

from quizecon.config import get_settings

_public_key: str | None = None


def _verification_key() -> str:
    """Secret or public key for the configured algorithm (public key cached)."""
    global _public_key  # noqa: PLW0603
    settings = get_settings()
    if settings.jwt_algorithm.startswith("HS"):
        return settings.jwt_secret
    if _public_key is None:
        _public_key = Path(settings.jwt_public_key_path).read_text()
    return _public_key


def reset_keys() -> None:
    """Reset cached keys (useful for testing)."""
    global _public_key  # noqa: PLW0603
    _public_key = None


def create_access_token(
    external_id: str,
    *,
    name: str | None = None,
    email: str | None = None,
    expires_minutes: int = 60,
) -> str:
    """
    Create an HS-signed access token for a principal.

    Args:
        external_id: The auth provider principal, stored as ``sub``.
        name: Optional display name claim.
        email: Optional email claim.
        expires_minutes: Lifetime of the token.

    Returns:
        Encoded JWT string.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": external_id,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    if name is not None:
        payload["name"] = name
    if email is not None:
        payload["email"] = email
    if settings.jwt_issuer:
        payload["iss"] = settings.jwt_issuer
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def verify_token(token: str) -> dict[str, Any]:
    """
    Verify and decode a bearer token.

    Raises:
        jwt.InvalidTokenError: If the token is invalid, expired, or has no subject.
    """
    settings = get_settings()
    options: dict[str, Any] = {"require": ["sub", "exp"]}
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            _verification_key(),
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    if not payload.get("sub"):
        msg = "Token has no subject"
        raise jwt.InvalidTokenError(msg)
    return payload
