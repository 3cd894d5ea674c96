"""Abstract protocols for the platform's persistent store."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, AsyncContextManager, Protocol, runtime_checkable

if TYPE_CHECKING:
    from guildvault.models import (
        AuditEntry,
        CategoryRecord,
        ChannelRecord,
        MessageRow,
        OverwriteRecord,
        RoleRecord,
        ServerRecord,
        UserRecord,
    )


@runtime_checkable
class UnitOfWork(Protocol):
    """Mutations inside one atomic transaction.

    Obtained from PlatformStore.unit_of_work(); commits when the block exits
    normally and rolls back on any exception.
    """

    async def lock_server(self, server_id: uuid.UUID) -> None:
        """Serialize concurrent units of work touching the same server."""
        ...

    async def delete_message_dependents(self, server_id: uuid.UUID) -> None:
        """Delete attachments, reactions and reports of messages in the server's channels."""
        ...

    async def clear_system_channel(self, server_id: uuid.UUID) -> None:
        ...

    async def delete_channels(self, server_id: uuid.UUID) -> int:
        """Delete every channel of the server (cascades to messages, members, overwrites,
        pins and read states). Returns the number of channels removed."""
        ...

    async def delete_categories(self, server_id: uuid.UUID) -> int:
        ...

    async def delete_non_default_roles(self, server_id: uuid.UUID) -> int:
        """Delete every role except the default one (cascades to role assignments)."""
        ...

    async def insert_category(self, category: "CategoryRecord") -> None:
        ...

    async def insert_channel(self, channel: "ChannelRecord") -> None:
        ...

    async def add_channel_member(self, channel_id: uuid.UUID, user_id: uuid.UUID) -> None:
        """Idempotent: an existing membership is left as is."""
        ...

    async def find_default_role(self, server_id: uuid.UUID) -> "RoleRecord | None":
        ...

    async def update_role_permissions(self, role_id: uuid.UUID, permissions: int) -> None:
        ...

    async def insert_role(self, role: "RoleRecord") -> None:
        ...

    async def upsert_overwrite(self, overwrite: "OverwriteRecord") -> None:
        """Insert or replace allow/deny bits for (channel, target_type, target_id)."""
        ...

    async def insert_message(self, message: "MessageRow") -> None:
        ...


@runtime_checkable
class PlatformStore(Protocol):
    """Protocol for store backends (SQLite, PostgreSQL)."""

    async def initialize(self) -> None:
        """Create tables/indexes if they don't exist."""
        ...

    def unit_of_work(self) -> AsyncContextManager[UnitOfWork]:
        ...

    async def find_user_by_id(self, user_id: uuid.UUID) -> "UserRecord | None":
        ...

    async def find_channel_by_id(self, channel_id: uuid.UUID) -> "ChannelRecord | None":
        ...

    async def find_server_by_id(self, server_id: uuid.UUID) -> "ServerRecord | None":
        ...

    async def set_system_channel(self, server_id: uuid.UUID, channel_id: uuid.UUID | None) -> None:
        ...

    async def is_server_member(self, server_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        ...

    async def get_member_permissions(self, server_id: uuid.UUID, user_id: uuid.UUID) -> tuple[bool, int]:
        """Return (is_owner, effective_bits) for a member; (False, 0) for non-members."""
        ...

    async def insert_audit_log(
        self,
        server_id: uuid.UUID,
        actor_id: uuid.UUID,
        action: str,
        target_type: str | None = None,
        target_id: uuid.UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        ...

    async def recent_audit_log(self, server_id: uuid.UUID, limit: int = 50) -> list["AuditEntry"]:
        """Newest first."""
        ...

    # --- Seeding (accounts and servers are created elsewhere on the platform) ---

    async def create_user(
        self, username: str, identity_key: bytes = b"", display_name: str | None = None,
        user_id: uuid.UUID | None = None,
    ) -> "UserRecord":
        ...

    async def create_server(self, name: str, owner_id: uuid.UUID) -> uuid.UUID:
        """Create a server with its default role and the owner's membership."""
        ...

    async def add_server_member(self, server_id: uuid.UUID, user_id: uuid.UUID) -> None:
        ...

    async def assign_role(self, role_id: uuid.UUID, user_id: uuid.UUID) -> None:
        ...

    # --- Listing ---

    async def list_categories(self, server_id: uuid.UUID) -> list["CategoryRecord"]:
        ...

    async def list_channels(self, server_id: uuid.UUID) -> list["ChannelRecord"]:
        ...

    async def list_roles(self, server_id: uuid.UUID) -> list["RoleRecord"]:
        ...

    async def list_overwrites(self, channel_id: uuid.UUID) -> list["OverwriteRecord"]:
        ...

    async def list_messages(self, channel_id: uuid.UUID) -> list["MessageRow"]:
        """Oldest first."""
        ...

    async def close(self) -> None:
        """Release resources (connections, pools)."""
        ...
