"""Access tokens for authenticated users and operators.

Guests identify themselves with a self-asserted session id. Anything that
grants more than that (a user id that owns conversations, the ``admin``
role) must come from a signed JWT in the ``Authorization: Bearer`` header,
or the ``token`` query parameter on WebSocket handshakes.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
from collections.abc import Iterable, Mapping
from typing import Any, TypedDict, cast

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError

from .session_context import ADMIN_ROLE, SessionContext
from .settings import TokenSettings

__all__ = [
    "AccessTokenPayload",
    "AuthTokenConfigurationError",
    "AuthTokenValidationError",
    "create_access_token",
    "decode_access_token",
    "resolve_session_context",
]


class AuthTokenConfigurationError(RuntimeError):
    """Raised when token verification is not configured."""


class AuthTokenValidationError(ValueError):
    """Raised when the presented token cannot be validated."""


class _AccessTokenRequiredClaims(TypedDict):
    user_id: str


class AccessTokenPayload(_AccessTokenRequiredClaims, total=False):
    """Decoded JWT payload."""

    aud: str | list[str]
    email: str
    exp: int
    iat: int
    iss: str
    name: str
    roles: list[str]
    type: str


def _require_secret(settings: TokenSettings) -> str:
    if not settings.secret:
        raise AuthTokenConfigurationError(
            "AUTH_TOKEN_SECRET must be set to accept access tokens."
        )
    return settings.secret


def create_access_token(
    user_id: str,
    settings: TokenSettings,
    *,
    roles: Iterable[str] = (),
    name: str | None = None,
    email: str | None = None,
    now: dt.datetime | None = None,
) -> str:
    """Issue a signed access token for ``user_id``."""

    secret = _require_secret(settings)
    now = now or dt.datetime.now(dt.timezone.utc)
    expires_at = now + dt.timedelta(seconds=settings.access_token_ttl_seconds)
    payload: dict[str, Any] = {
        "user_id": str(user_id),
        "roles": [role for role in roles if role],
        "iss": settings.issuer,
        "aud": settings.audience,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "type": "access",
    }
    if name:
        payload["name"] = name
    if email:
        payload["email"] = email
    return str(jwt.encode(payload, secret, algorithm=settings.algorithm))


def decode_access_token(token: str, settings: TokenSettings) -> AccessTokenPayload:
    """Decode and validate an access token.

    Raises:
        AuthTokenConfigurationError: If no signing secret is configured.
        AuthTokenValidationError: If the signature, claims or expiry are invalid.
    """

    secret = _require_secret(settings)
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[settings.algorithm],
            audience=settings.audience,
            issuer=settings.issuer,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise AuthTokenValidationError("Access token has expired.") from exc
    except InvalidTokenError as exc:
        raise AuthTokenValidationError("Access token is invalid.") from exc

    if not payload.get("user_id"):
        raise AuthTokenValidationError("Access token payload must include 'user_id'.")
    type_claim = payload.get("type")
    if type_claim and type_claim != "access":
        raise AuthTokenValidationError("Token must be an access token.")
    return cast(AccessTokenPayload, payload)


def _bearer_token(values: Mapping[str, Any]) -> str | None:
    authorization = values.get("authorization")
    if authorization:
        scheme, _, credentials = str(authorization).partition(" ")
        if not credentials or scheme.lower() != "bearer":
            raise AuthTokenValidationError("Authorization header must use Bearer scheme.")
        return credentials.strip()
    token = values.get("token")
    return str(token) if token else None


def resolve_session_context(
    values: Mapping[str, Any], settings: TokenSettings
) -> SessionContext:
    """Build the caller's :class:`SessionContext` from lower-cased headers / query keys.

    Without a token the caller is a guest identified only by its session id.
    With one, user id, role and profile come from the verified claims.
    """

    context = SessionContext.from_mapping(values)
    token = _bearer_token(values)
    if token is None:
        return context

    claims = decode_access_token(token, settings)
    roles = list(claims.get("roles") or [])
    if ADMIN_ROLE in roles:
        role: str | None = ADMIN_ROLE
    else:
        role = roles[0] if roles else None
    return dataclasses.replace(
        context,
        user_id=claims["user_id"],
        role=role,
        name=claims.get("name") or context.name,
        email=claims.get("email") or context.email,
    )
