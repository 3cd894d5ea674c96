"""PostgreSQL backend for the platform store: asyncpg connection pool."""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

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

logger = logging.getLogger("guildvault.store")

# DDL executed on initialize(). attachments, reactions and reports have no
# foreign key to messages; the restore wipe removes them explicitly.
_SCHEMA = [
    """CREATE TABLE IF NOT EXISTS users (
        id           UUID PRIMARY KEY,
        username     TEXT NOT NULL UNIQUE,
        display_name TEXT,
        identity_key BYTEA NOT NULL DEFAULT '\\x',
        created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )""",
    """CREATE TABLE IF NOT EXISTS servers (
        id                UUID PRIMARY KEY,
        name              TEXT NOT NULL,
        owner_id          UUID NOT NULL REFERENCES users(id),
        system_channel_id UUID,
        created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )""",
    """CREATE TABLE IF NOT EXISTS server_members (
        id        UUID PRIMARY KEY,
        server_id UUID NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
        user_id   UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (server_id, user_id)
    )""",
    """CREATE TABLE IF NOT EXISTS roles (
        id          UUID PRIMARY KEY,
        server_id   UUID NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
        name        TEXT NOT NULL,
        color       TEXT,
        permissions BIGINT NOT NULL DEFAULT 0,
        position    INTEGER NOT NULL DEFAULT 0,
        is_default  BOOLEAN NOT NULL DEFAULT FALSE
    )""",
    """CREATE TABLE IF NOT EXISTS member_roles (
        role_id UUID NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        PRIMARY KEY (role_id, user_id)
    )""",
    """CREATE TABLE IF NOT EXISTS channel_categories (
        id        UUID PRIMARY KEY,
        server_id UUID NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
        name      TEXT NOT NULL,
        position  INTEGER NOT NULL DEFAULT 0
    )""",
    """CREATE TABLE IF NOT EXISTS channels (
        id             UUID PRIMARY KEY,
        server_id      UUID REFERENCES servers(id) ON DELETE CASCADE,
        encrypted_meta BYTEA NOT NULL,
        channel_type   TEXT NOT NULL,
        position       INTEGER NOT NULL DEFAULT 0,
        category_id    UUID REFERENCES channel_categories(id) ON DELETE SET NULL,
        is_private     BOOLEAN NOT NULL DEFAULT FALSE,
        encrypted      BOOLEAN NOT NULL DEFAULT TRUE,
        created_at     TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )""",
    """DO $$ BEGIN
        ALTER TABLE servers ADD CONSTRAINT servers_system_channel_fk
            FOREIGN KEY (system_channel_id) REFERENCES channels(id);
    EXCEPTION WHEN duplicate_object THEN NULL;
    END $$""",
    """CREATE TABLE IF NOT EXISTS channel_members (
        id         UUID PRIMARY KEY,
        channel_id UUID NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
        user_id    UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        joined_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        hidden     BOOLEAN NOT NULL DEFAULT FALSE,
        UNIQUE (channel_id, user_id)
    )""",
    """CREATE TABLE IF NOT EXISTS channel_permission_overwrites (
        channel_id  UUID NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
        target_type TEXT NOT NULL,
        target_id   UUID NOT NULL,
        allow_bits  BIGINT NOT NULL DEFAULT 0,
        deny_bits   BIGINT NOT NULL DEFAULT 0,
        PRIMARY KEY (channel_id, target_type, target_id)
    )""",
    """CREATE TABLE IF NOT EXISTS messages (
        id              UUID PRIMARY KEY,
        channel_id      UUID NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
        sender_token    BYTEA NOT NULL,
        encrypted_body  BYTEA NOT NULL,
        timestamp       TIMESTAMPTZ NOT NULL,
        has_attachments BOOLEAN NOT NULL DEFAULT FALSE,
        sender_id       UUID,
        reply_to_id     UUID,
        message_type    TEXT NOT NULL DEFAULT 'text'
    )""",
    """CREATE TABLE IF NOT EXISTS attachments (
        id             UUID PRIMARY KEY,
        message_id     UUID NOT NULL,
        encrypted_meta BYTEA
    )""",
    """CREATE TABLE IF NOT EXISTS reactions (
        id         UUID PRIMARY KEY,
        message_id UUID NOT NULL,
        user_id    UUID NOT NULL,
        emoji      TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS reports (
        id          UUID PRIMARY KEY,
        message_id  UUID NOT NULL,
        reporter_id UUID NOT NULL,
        reason      TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS pinned_messages (
        channel_id UUID NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
        message_id UUID NOT NULL,
        pinned_by  UUID,
        PRIMARY KEY (channel_id, message_id)
    )""",
    """CREATE TABLE IF NOT EXISTS read_states (
        channel_id           UUID NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
        user_id              UUID NOT NULL,
        last_read_message_id UUID,
        PRIMARY KEY (channel_id, user_id)
    )""",
    """CREATE TABLE IF NOT EXISTS audit_log (
        id          UUID PRIMARY KEY,
        server_id   UUID NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
        actor_id    UUID NOT NULL,
        action      TEXT NOT NULL,
        target_type TEXT,
        target_id   UUID,
        metadata    JSONB,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )""",
    "CREATE INDEX IF NOT EXISTS idx_channels_server ON channels(server_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_channel_ts ON messages(channel_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_roles_server ON roles(server_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_server ON audit_log(server_id, created_at)",
]

_SERVER_MESSAGES = (
    "SELECT m.id FROM messages m JOIN channels c ON c.id = m.channel_id WHERE c.server_id = $1"
)


def _rowcount(status: str) -> int:
    """asyncpg returns the command tag, e.g. 'DELETE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


def _row_to_channel(row: asyncpg.Record) -> ChannelRecord:
    return ChannelRecord(
        id=row["id"],
        server_id=row["server_id"],
        name=bytes(row["encrypted_meta"]).decode("utf-8", errors="replace"),
        channel_type=row["channel_type"],
        position=row["position"],
        category_id=row["category_id"],
        is_private=row["is_private"],
        encrypted=row["encrypted"],
    )


def _row_to_role(row: asyncpg.Record) -> RoleRecord:
    return RoleRecord(
        id=row["id"],
        server_id=row["server_id"],
        name=row["name"],
        color=row["color"],
        permissions=row["permissions"],
        position=row["position"],
        is_default=row["is_default"],
    )


class PostgresUnitOfWork:
    """Mutations on one pooled connection inside ``conn.transaction()``."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def lock_server(self, server_id: uuid.UUID) -> None:
        """Transaction-scoped advisory lock keyed by the server id."""
        await self._conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", str(server_id))

    async def delete_message_dependents(self, server_id: uuid.UUID) -> None:
        for table in ("attachments", "reactions", "reports"):
            await self._conn.execute(
                f"DELETE FROM {table} WHERE message_id IN ({_SERVER_MESSAGES})", server_id
            )

    async def clear_system_channel(self, server_id: uuid.UUID) -> None:
        await self._conn.execute("UPDATE servers SET system_channel_id = NULL WHERE id = $1", server_id)

    async def delete_channels(self, server_id: uuid.UUID) -> int:
        return _rowcount(await self._conn.execute("DELETE FROM channels WHERE server_id = $1", server_id))

    async def delete_categories(self, server_id: uuid.UUID) -> int:
        return _rowcount(
            await self._conn.execute("DELETE FROM channel_categories WHERE server_id = $1", server_id)
        )

    async def delete_non_default_roles(self, server_id: uuid.UUID) -> int:
        return _rowcount(await self._conn.execute(
            "DELETE FROM roles WHERE server_id = $1 AND is_default = FALSE", server_id
        ))

    async def insert_category(self, category: CategoryRecord) -> None:
        await self._conn.execute(
            "INSERT INTO channel_categories (id, server_id, name, position) VALUES ($1, $2, $3, $4)",
            category.id, category.server_id, category.name, category.position,
        )

    async def insert_channel(self, channel: ChannelRecord) -> None:
        await self._conn.execute(
            """
            INSERT INTO channels (id, server_id, encrypted_meta, channel_type, position,
                                  category_id, is_private, encrypted, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, CURRENT_TIMESTAMP)
            """,
            channel.id, channel.server_id, channel.name.encode("utf-8"), channel.channel_type,
            channel.position, channel.category_id, channel.is_private, channel.encrypted,
        )

    async def add_channel_member(self, channel_id: uuid.UUID, user_id: uuid.UUID) -> None:
        await self._conn.execute(
            """
            INSERT INTO channel_members (id, channel_id, user_id, joined_at)
            VALUES ($1, $2, $3, CURRENT_TIMESTAMP)
            ON CONFLICT (channel_id, user_id) DO NOTHING
            """,
            uuid.uuid4(), channel_id, user_id,
        )

    async def find_default_role(self, server_id: uuid.UUID) -> RoleRecord | None:
        row = await self._conn.fetchrow(
            "SELECT * FROM roles WHERE server_id = $1 AND is_default = TRUE LIMIT 1", server_id
        )
        return _row_to_role(row) if row else None

    async def update_role_permissions(self, role_id: uuid.UUID, permissions: int) -> None:
        await self._conn.execute("UPDATE roles SET permissions = $1 WHERE id = $2", permissions, role_id)

    async def insert_role(self, role: RoleRecord) -> None:
        await self._conn.execute(
            """
            INSERT INTO roles (id, server_id, name, color, permissions, position, is_default)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            role.id, role.server_id, role.name, role.color, role.permissions, role.position,
            role.is_default,
        )

    async def upsert_overwrite(self, overwrite: OverwriteRecord) -> None:
        await self._conn.execute(
            """
            INSERT INTO channel_permission_overwrites
                (channel_id, target_type, target_id, allow_bits, deny_bits)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (channel_id, target_type, target_id)
            DO UPDATE SET allow_bits = $4, deny_bits = $5
            """,
            overwrite.channel_id, overwrite.target_type, overwrite.target_id,
            overwrite.allow_bits, overwrite.deny_bits,
        )

    async def insert_message(self, message: MessageRow) -> None:
        await self._conn.execute(
            """
            INSERT INTO messages (id, channel_id, sender_token, encrypted_body, timestamp,
                                  has_attachments, sender_id, reply_to_id, message_type)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            message.id, message.channel_id, message.sender_token, message.encrypted_body,
            message.timestamp, message.has_attachments, message.sender_id, message.reply_to_id,
            message.message_type,
        )


class PostgresStore:
    """asyncpg-backed platform store with connection pooling."""

    def __init__(self, dsn: str, pool_min: int = 2, pool_max: int = 10) -> None:
        # Never log the DSN, it may contain credentials.
        self._dsn = dsn
        self._pool_min = pool_min
        self._pool_max = pool_max
        self._pool: asyncpg.Pool | None = None

    async def initialize(self) -> None:
        """Create connection pool and schema tables/indexes."""
        self._pool = await asyncpg.create_pool(
            self._dsn,
            min_size=self._pool_min,
            max_size=self._pool_max,
        )
        async with self._pool.acquire() as conn:
            for sql in _SCHEMA:
                await conn.execute(sql)

    def _pool_or_raise(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PostgresStore not initialized; call initialize() first")
        return self._pool

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[PostgresUnitOfWork]:
        pool = self._pool_or_raise()
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield PostgresUnitOfWork(conn)

    async def _fetch(self, sql: str, *args: Any) -> list[asyncpg.Record]:
        async with self._pool_or_raise().acquire() as conn:
            return await conn.fetch(sql, *args)

    async def _execute(self, sql: str, *args: Any) -> str:
        async with self._pool_or_raise().acquire() as conn:
            return await conn.execute(sql, *args)

    # --- Reads ---

    async def find_user_by_id(self, user_id: uuid.UUID) -> UserRecord | None:
        rows = await self._fetch("SELECT * FROM users WHERE id = $1", user_id)
        if not rows:
            return None
        row = rows[0]
        return UserRecord(
            id=row["id"], username=row["username"], display_name=row["display_name"],
            identity_key=bytes(row["identity_key"]),
        )

    async def find_server_by_id(self, server_id: uuid.UUID) -> ServerRecord | None:
        rows = await self._fetch("SELECT * FROM servers WHERE id = $1", server_id)
        if not rows:
            return None
        row = rows[0]
        return ServerRecord(
            id=row["id"], name=row["name"], owner_id=row["owner_id"],
            system_channel_id=row["system_channel_id"],
        )

    async def find_channel_by_id(self, channel_id: uuid.UUID) -> ChannelRecord | None:
        rows = await self._fetch("SELECT * FROM channels WHERE id = $1", channel_id)
        return _row_to_channel(rows[0]) if rows else None

    async def is_server_member(self, server_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        rows = await self._fetch(
            "SELECT 1 FROM server_members WHERE server_id = $1 AND user_id = $2", server_id, user_id
        )
        return bool(rows)

    async def get_member_permissions(self, server_id: uuid.UUID, user_id: uuid.UUID) -> tuple[bool, int]:
        rows = await self._fetch(
            """
            SELECT s.owner_id = $2 AS is_owner,
                   COALESCE(BIT_OR(r.permissions), 0) AS permissions
            FROM servers s
            JOIN server_members sm ON sm.server_id = s.id AND sm.user_id = $2
            LEFT JOIN roles r ON r.server_id = s.id AND (
                r.is_default OR r.id IN (SELECT role_id FROM member_roles WHERE user_id = $2)
            )
            WHERE s.id = $1
            GROUP BY s.owner_id
            """,
            server_id, user_id,
        )
        if not rows:
            return False, 0
        return bool(rows[0]["is_owner"]), int(rows[0]["permissions"])

    async def recent_audit_log(self, server_id: uuid.UUID, limit: int = 50) -> list[AuditEntry]:
        rows = await self._fetch(
            "SELECT *, metadata::text AS metadata_json FROM audit_log "
            "WHERE server_id = $1 ORDER BY created_at DESC LIMIT $2",
            server_id, limit,
        )
        return [
            AuditEntry(
                id=r["id"], server_id=r["server_id"], actor_id=r["actor_id"], action=r["action"],
                target_type=r["target_type"], target_id=r["target_id"],
                metadata=json.loads(r["metadata_json"]) if r["metadata_json"] else {},
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def list_categories(self, server_id: uuid.UUID) -> list[CategoryRecord]:
        rows = await self._fetch(
            "SELECT * FROM channel_categories WHERE server_id = $1 ORDER BY position, id", server_id
        )
        return [
            CategoryRecord(id=r["id"], server_id=r["server_id"], name=r["name"], position=r["position"])
            for r in rows
        ]

    async def list_channels(self, server_id: uuid.UUID) -> list[ChannelRecord]:
        rows = await self._fetch(
            "SELECT * FROM channels WHERE server_id = $1 ORDER BY position, id", server_id
        )
        return [_row_to_channel(r) for r in rows]

    async def list_roles(self, server_id: uuid.UUID) -> list[RoleRecord]:
        rows = await self._fetch("SELECT * FROM roles WHERE server_id = $1 ORDER BY position, id", server_id)
        return [_row_to_role(r) for r in rows]

    async def list_overwrites(self, channel_id: uuid.UUID) -> list[OverwriteRecord]:
        rows = await self._fetch(
            "SELECT * FROM channel_permission_overwrites WHERE channel_id = $1 ORDER BY target_id",
            channel_id,
        )
        return [
            OverwriteRecord(
                channel_id=r["channel_id"], target_type=r["target_type"], target_id=r["target_id"],
                allow_bits=r["allow_bits"], deny_bits=r["deny_bits"],
            )
            for r in rows
        ]

    async def list_messages(self, channel_id: uuid.UUID) -> list[MessageRow]:
        rows = await self._fetch(
            "SELECT * FROM messages WHERE channel_id = $1 ORDER BY timestamp, id", channel_id
        )
        return [
            MessageRow(
                id=r["id"], channel_id=r["channel_id"], sender_token=bytes(r["sender_token"]),
                encrypted_body=bytes(r["encrypted_body"]), timestamp=r["timestamp"],
                has_attachments=r["has_attachments"], sender_id=r["sender_id"],
                reply_to_id=r["reply_to_id"], message_type=r["message_type"],
            )
            for r in rows
        ]

    # --- Writes outside a unit of work ---

    async def insert_audit_log(
        self,
        server_id: uuid.UUID,
        actor_id: uuid.UUID,
        action: str,
        target_type: str | None = None,
        target_id: uuid.UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self._execute(
            """
            INSERT INTO audit_log (id, server_id, actor_id, action, target_type, target_id, metadata)
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
            """,
            uuid.uuid4(), server_id, actor_id, action, target_type, target_id,
            json.dumps(metadata) if metadata is not None else None,
        )

    async def create_user(
        self, username: str, identity_key: bytes = b"", display_name: str | None = None,
        user_id: uuid.UUID | None = None,
    ) -> UserRecord:
        record = UserRecord(
            id=user_id or uuid.uuid4(), username=username,
            display_name=display_name, identity_key=identity_key,
        )
        await self._execute(
            "INSERT INTO users (id, username, display_name, identity_key) VALUES ($1, $2, $3, $4)",
            record.id, username, display_name, identity_key,
        )
        return record

    async def create_server(self, name: str, owner_id: uuid.UUID) -> uuid.UUID:
        server_id = uuid.uuid4()
        async with self.unit_of_work() as uow:
            conn = uow._conn
            await conn.execute(
                "INSERT INTO servers (id, name, owner_id) VALUES ($1, $2, $3)", server_id, name, owner_id
            )
            await conn.execute(
                "INSERT INTO roles (id, server_id, name, permissions, position, is_default) "
                "VALUES ($1, $2, '@everyone', 0, 0, TRUE)",
                uuid.uuid4(), server_id,
            )
            await conn.execute(
                "INSERT INTO server_members (id, server_id, user_id) VALUES ($1, $2, $3)",
                uuid.uuid4(), server_id, owner_id,
            )
        return server_id

    async def add_server_member(self, server_id: uuid.UUID, user_id: uuid.UUID) -> None:
        await self._execute(
            "INSERT INTO server_members (id, server_id, user_id) VALUES ($1, $2, $3) "
            "ON CONFLICT (server_id, user_id) DO NOTHING",
            uuid.uuid4(), server_id, user_id,
        )

    async def assign_role(self, role_id: uuid.UUID, user_id: uuid.UUID) -> None:
        await self._execute(
            "INSERT INTO member_roles (role_id, user_id) VALUES ($1, $2) ON CONFLICT DO NOTHING",
            role_id, user_id,
        )

    async def set_system_channel(self, server_id: uuid.UUID, channel_id: uuid.UUID | None) -> None:
        await self._execute(
            "UPDATE servers SET system_channel_id = $1 WHERE id = $2", channel_id, server_id
        )
