"""Auth models for the guildvault HTTP API."""

from __future__ import annotations

import uuid

from pydantic import BaseModel


class TokenPayload(BaseModel):
    """JWT token payload."""
    sub: str          # subject: platform user id
    exp: int          # UNIX expiry timestamp


class AuthContext(BaseModel):
    """Injected into route handlers via FastAPI Depends."""
    user_id: uuid.UUID
