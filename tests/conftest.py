"""Shared pytest fixtures for the guildvault test suite."""

from __future__ import annotations

import base64

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from guildvault.audit import AuditLogger
from guildvault.events import BackgroundDispatcher, EventBus
from guildvault.models import (
    BackupCategory,
    BackupChannel,
    BackupPermissionOverwrite,
    BackupRole,
    MessageRecord,
    RestoreServerRequest,
)
from guildvault.restore import StructuralRestorer
from guildvault.store.sqlite_backend import SqliteStore


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def raw_public_key(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def make_message(timestamp: str = "2024-03-01T12:00:00Z", body: bytes = b"ciphertext", **kw) -> MessageRecord:
    return MessageRecord(
        sender_token=b64(kw.pop("sender_token", b"\x01\x02")),
        encrypted_body=b64(body),
        timestamp=timestamp,
        **kw,
    )


def sample_backup() -> RestoreServerRequest:
    """2 categories, 5 channels (one DM), default + 2 custom roles, 4 overwrites (one member)."""
    return RestoreServerRequest(
        server={"name": "Old Guild"},
        categories=[
            BackupCategory(local_id="cat-info", name="Info", position=0),
            BackupCategory(local_id="cat-chat", name="Chat", position=1),
        ],
        channels=[
            BackupChannel(local_id="ch-rules", name="rules", channel_type="announcement",
                          position=0, category_local_id="cat-info"),
            BackupChannel(local_id="ch-general", name="general", position=1, category_local_id="cat-chat"),
            BackupChannel(local_id="ch-voice", name="Lounge", channel_type="voice", position=2,
                          category_local_id="cat-chat"),
            BackupChannel(local_id="ch-staff", name="staff", position=3, is_private=True),
            BackupChannel(local_id="ch-dm", name="dm", channel_type="dm", position=4),
        ],
        roles=[
            BackupRole(local_id="role-everyone", name="@everyone", permissions=0b1100000000, is_default=True),
            BackupRole(local_id="role-mod", name="Moderator", color="#ff0000", permissions=0b1000000, position=2),
            BackupRole(local_id="role-member", name="Member", permissions=0b100000000, position=1),
        ],
        permission_overwrites=[
            BackupPermissionOverwrite(channel_local_id="ch-staff", target_type="role",
                                      target_id="role-everyone", allow=0, deny=0b100000000),
            BackupPermissionOverwrite(channel_local_id="ch-staff", target_type="role",
                                      target_id="role-mod", allow=0b100000000, deny=0),
            BackupPermissionOverwrite(channel_local_id="ch-rules", target_type="role",
                                      target_id="role-member", allow=0, deny=0b1000000000),
            BackupPermissionOverwrite(channel_local_id="ch-general", target_type="member",
                                      target_id="user-from-elsewhere", allow=1, deny=0),
        ],
    )


@pytest.fixture
async def store(tmp_path):
    """SqliteStore in a temporary directory with schema created."""
    s = SqliteStore(str(tmp_path / "platform.db"))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def owner(store):
    return await store.create_user("owner", display_name="Server Owner")


@pytest.fixture
async def server_id(store, owner):
    """Server owned by `owner`, with its default role."""
    return await store.create_server("Guild", owner.id)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def dispatcher():
    return BackgroundDispatcher()


@pytest.fixture
def restorer(store, bus, dispatcher):
    return StructuralRestorer(store, AuditLogger(store), bus, dispatcher)


@pytest.fixture
def signing_key():
    return Ed25519PrivateKey.generate()
