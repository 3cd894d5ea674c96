"""Authentication utilities: JWT encode/decode and the FastAPI dependency."""

from __future__ import annotations

import time
import uuid
from typing import Optional

import jwt
from fastapi import Request

from guildvault.auth_models import AuthContext, TokenPayload
from guildvault.config import Config
from guildvault.errors import ErrorCode, GuildVaultError

_MIN_SECRET_LENGTH = 32


def check_auth_config(config: Config) -> None:
    """Validate jwt_secret length at startup when auth is enabled. Raises ValueError."""
    if config.auth.enabled and len(config.auth.jwt_secret) < _MIN_SECRET_LENGTH:
        raise ValueError(
            "auth.jwt_secret must be at least 32 characters when auth is enabled. "
            "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
        )


def create_jwt(payload: TokenPayload, secret: str) -> str:
    """Sign and return a JWT token string."""
    return jwt.encode({"sub": payload.sub, "exp": payload.exp}, secret, algorithm="HS256")


def issue_token(user_id: uuid.UUID, config: Config) -> str:
    expiry = int(time.time()) + config.auth.jwt_expiry_hours * 3600
    return create_jwt(TokenPayload(sub=str(user_id), exp=expiry), config.auth.jwt_secret)


def verify_jwt(token: str, secret: str) -> Optional[TokenPayload]:
    """Decode and verify JWT. Returns TokenPayload or None on any failure.

    Tokens without an exp claim are rejected.
    """
    try:
        data = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"require": ["exp"]},
        )
        return TokenPayload(sub=data["sub"], exp=data["exp"])
    except (jwt.PyJWTError, KeyError, ValueError):
        return None


async def get_auth_context(request: Request) -> AuthContext:
    """FastAPI dependency: resolve the caller's platform user id.

    With auth enabled, requires ``Authorization: Bearer <jwt>`` whose ``sub``
    is the user id. With auth disabled (local development only), the user id
    is taken from the ``X-User-ID`` header.
    """
    config: Config = request.app.state.cfg

    if not config.auth.enabled:
        raw = request.headers.get("X-User-ID", "")
    else:
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            raise GuildVaultError(ErrorCode.AUTH_REQUIRED, "Authentication required")
        payload = verify_jwt(auth_header[7:], config.auth.jwt_secret)
        if payload is None:
            raise GuildVaultError(ErrorCode.AUTH_INVALID, "Invalid or expired token")
        raw = payload.sub

    try:
        return AuthContext(user_id=uuid.UUID(raw))
    except ValueError:
        raise GuildVaultError(ErrorCode.AUTH_INVALID, "Token subject is not a user id")
