"""Core data models for guildvault: backup payloads, API shapes and store records."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# --- Enums ---


class ChannelType(str, Enum):
    """Known channel kinds. Backups may carry others; they are restored verbatim."""

    TEXT = "text"
    VOICE = "voice"
    ANNOUNCEMENT = "announcement"
    DM = "dm"
    GROUP_DM = "group_dm"


# Channel kinds owned by users rather than a server; never restored structurally.
DIRECT_CHANNEL_TYPES = frozenset({ChannelType.DM.value, ChannelType.GROUP_DM.value})


class OverwriteTarget(str, Enum):
    ROLE = "role"
    MEMBER = "member"


# Column widths: permission bitmasks are BIGINT, positions INTEGER.
_INT64_MIN, _INT64_MAX = -(2**63), 2**63 - 1
_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1


# --- Backup payload (backup-local identifiers) ---


class _BackupEntity(BaseModel):
    model_config = {"populate_by_name": True}


class BackupServerInfo(_BackupEntity):
    name: str = ""


class BackupCategory(_BackupEntity):
    local_id: str = Field(..., alias="id")
    name: str
    position: int = Field(default=0, ge=_INT32_MIN, le=_INT32_MAX)


class BackupChannel(_BackupEntity):
    local_id: str = Field(..., alias="id")
    name: str
    channel_type: str = ChannelType.TEXT.value
    position: int = Field(default=0, ge=_INT32_MIN, le=_INT32_MAX)
    category_local_id: str | None = Field(default=None, alias="category_id")
    is_private: bool = False


class BackupRole(_BackupEntity):
    local_id: str = Field(..., alias="id")
    name: str
    color: str | None = None
    permissions: int = Field(default=0, ge=_INT64_MIN, le=_INT64_MAX)
    position: int = Field(default=0, ge=_INT32_MIN, le=_INT32_MAX)
    is_default: bool = False


class BackupPermissionOverwrite(_BackupEntity):
    channel_local_id: str = Field(..., alias="channel_id")
    target_type: str
    target_id: str
    allow: int = Field(default=0, ge=_INT64_MIN, le=_INT64_MAX)
    deny: int = Field(default=0, ge=_INT64_MIN, le=_INT64_MAX)


class RestoreServerRequest(BaseModel):
    server: BackupServerInfo | None = None
    categories: list[BackupCategory] = Field(default_factory=list)
    channels: list[BackupChannel] = Field(default_factory=list)
    roles: list[BackupRole] = Field(default_factory=list)
    permission_overwrites: list[BackupPermissionOverwrite] = Field(default_factory=list)


class RestoreServerResponse(BaseModel):
    categories_created: int = 0
    channels_created: int = 0
    roles_created: int = 0
    roles_updated: int = 0
    overwrites_applied: int = 0
    channel_id_map: dict[str, str] = Field(default_factory=dict)


# --- Message replay ---


class MessageRecord(BaseModel):
    """One historical message as exported. Binary fields are standard base64."""

    sender_token: str
    encrypted_body: str
    timestamp: str
    has_attachments: bool = False
    sender_id: str | None = None
    reply_to_id: str | None = None
    message_type: str = "text"


class ImportMessagesRequest(BaseModel):
    messages: list[MessageRecord] = Field(default_factory=list)


class ImportMessagesResponse(BaseModel):
    imported: int = 0


# --- Manifest verification / export logging ---


class VerifyExportRequest(BaseModel):
    manifest: dict[str, Any]
    signature: str  # base64-encoded Ed25519 signature


class VerifySigner(BaseModel):
    user_id: uuid.UUID
    username: str
    display_name: str | None = None


class VerifyExportResponse(BaseModel):
    valid: bool
    signer: VerifySigner | None = None
    identity_key_matches: bool = False


class LogExportRequest(BaseModel):
    scope: str  # "server", "channel" or "dm"
    server_id: uuid.UUID | None = None
    channel_id: uuid.UUID | None = None
    message_count: int = Field(default=0, ge=0)


# --- Store records ---


class UserRecord(BaseModel):
    id: uuid.UUID
    username: str
    display_name: str | None = None
    identity_key: bytes = b""


class ServerRecord(BaseModel):
    id: uuid.UUID
    name: str
    owner_id: uuid.UUID
    system_channel_id: uuid.UUID | None = None


class CategoryRecord(BaseModel):
    id: uuid.UUID
    server_id: uuid.UUID
    name: str
    position: int = Field(default=0, ge=_INT32_MIN, le=_INT32_MAX)


class ChannelRecord(BaseModel):
    id: uuid.UUID
    server_id: uuid.UUID | None = None
    name: str = ""
    channel_type: str = ChannelType.TEXT.value
    position: int = Field(default=0, ge=_INT32_MIN, le=_INT32_MAX)
    category_id: uuid.UUID | None = None
    is_private: bool = False
    encrypted: bool = True


class RoleRecord(BaseModel):
    id: uuid.UUID
    server_id: uuid.UUID
    name: str
    color: str | None = None
    permissions: int = Field(default=0, ge=_INT64_MIN, le=_INT64_MAX)
    position: int = Field(default=0, ge=_INT32_MIN, le=_INT32_MAX)
    is_default: bool = False


class OverwriteRecord(BaseModel):
    channel_id: uuid.UUID
    target_type: str
    target_id: uuid.UUID
    allow_bits: int = Field(default=0, ge=_INT64_MIN, le=_INT64_MAX)
    deny_bits: int = Field(default=0, ge=_INT64_MIN, le=_INT64_MAX)


class MessageRow(BaseModel):
    id: uuid.UUID
    channel_id: uuid.UUID
    sender_token: bytes
    encrypted_body: bytes
    timestamp: datetime
    has_attachments: bool = False
    sender_id: uuid.UUID | None = None
    reply_to_id: uuid.UUID | None = None
    message_type: str = "text"


class AuditEntry(BaseModel):
    id: uuid.UUID
    server_id: uuid.UUID
    actor_id: uuid.UUID
    action: str
    target_type: str | None = None
    target_id: uuid.UUID | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
