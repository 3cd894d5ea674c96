"""SQLite backend for the platform store: synchronous sqlite3 wrapped as async."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, AsyncIterator, Callable

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

# attachments, reactions and reports deliberately carry no foreign key to
# messages; the restore wipe removes them explicitly.
_SCHEMA = [
    """CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        display_name TEXT,
        identity_key BLOB NOT NULL DEFAULT x'',
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS servers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        owner_id TEXT NOT NULL REFERENCES users(id),
        system_channel_id TEXT REFERENCES channels(id),
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS server_members (
        id TEXT PRIMARY KEY,
        server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        joined_at TEXT NOT NULL,
        UNIQUE (server_id, user_id)
    )""",
    """CREATE TABLE IF NOT EXISTS roles (
        id TEXT PRIMARY KEY,
        server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        color TEXT,
        permissions INTEGER NOT NULL DEFAULT 0,
        position INTEGER NOT NULL DEFAULT 0,
        is_default INTEGER NOT NULL DEFAULT 0
    )""",
    """CREATE TABLE IF NOT EXISTS member_roles (
        role_id TEXT NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        PRIMARY KEY (role_id, user_id)
    )""",
    """CREATE TABLE IF NOT EXISTS channel_categories (
        id TEXT PRIMARY KEY,
        server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        position INTEGER NOT NULL DEFAULT 0
    )""",
    """CREATE TABLE IF NOT EXISTS channels (
        id TEXT PRIMARY KEY,
        server_id TEXT REFERENCES servers(id) ON DELETE CASCADE,
        encrypted_meta BLOB NOT NULL,
        channel_type TEXT NOT NULL,
        position INTEGER NOT NULL DEFAULT 0,
        category_id TEXT REFERENCES channel_categories(id) ON DELETE SET NULL,
        is_private INTEGER NOT NULL DEFAULT 0,
        encrypted INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS channel_members (
        id TEXT PRIMARY KEY,
        channel_id TEXT NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        joined_at TEXT NOT NULL,
        hidden INTEGER NOT NULL DEFAULT 0,
        UNIQUE (channel_id, user_id)
    )""",
    """CREATE TABLE IF NOT EXISTS channel_permission_overwrites (
        channel_id TEXT NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
        target_type TEXT NOT NULL,
        target_id TEXT NOT NULL,
        allow_bits INTEGER NOT NULL DEFAULT 0,
        deny_bits INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (channel_id, target_type, target_id)
    )""",
    """CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        channel_id TEXT NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
        sender_token BLOB NOT NULL,
        encrypted_body BLOB NOT NULL,
        timestamp TEXT NOT NULL,
        has_attachments INTEGER NOT NULL DEFAULT 0,
        sender_id TEXT,
        reply_to_id TEXT,
        message_type TEXT NOT NULL DEFAULT 'text'
    )""",
    """CREATE TABLE IF NOT EXISTS attachments (
        id TEXT PRIMARY KEY,
        message_id TEXT NOT NULL,
        encrypted_meta BLOB
    )""",
    """CREATE TABLE IF NOT EXISTS reactions (
        id TEXT PRIMARY KEY,
        message_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        emoji TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS reports (
        id TEXT PRIMARY KEY,
        message_id TEXT NOT NULL,
        reporter_id TEXT NOT NULL,
        reason TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS pinned_messages (
        channel_id TEXT NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
        message_id TEXT NOT NULL,
        pinned_by TEXT,
        PRIMARY KEY (channel_id, message_id)
    )""",
    """CREATE TABLE IF NOT EXISTS read_states (
        channel_id TEXT NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        last_read_message_id TEXT,
        PRIMARY KEY (channel_id, user_id)
    )""",
    """CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
        actor_id TEXT NOT NULL,
        action TEXT NOT NULL,
        target_type TEXT,
        target_id TEXT,
        metadata TEXT,
        created_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_channels_server ON channels(server_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_channel_ts ON messages(channel_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_roles_server ON roles(server_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_server ON audit_log(server_id, created_at)",
]

_SERVER_MESSAGES = (
    "SELECT m.id FROM messages m JOIN channels c ON c.id = m.channel_id WHERE c.server_id = ?"
)


def _now() -> str:
    return _ts(datetime.now(timezone.utc))


def _ts(value: datetime) -> str:
    """Fixed-width UTC text so lexical order equals chronological order."""
    utc = value.astimezone(timezone.utc)
    # %Y is not zero-padded below year 1000 on every platform
    return f"{utc.year:04d}-" + utc.strftime("%m-%dT%H:%M:%S.%f+00:00")


def _uuid(value: str | None) -> uuid.UUID | None:
    return uuid.UUID(value) if value else None


def _str(value: uuid.UUID | None) -> str | None:
    return str(value) if value is not None else None


def _row_to_channel(row: sqlite3.Row) -> ChannelRecord:
    return ChannelRecord(
        id=uuid.UUID(row["id"]),
        server_id=_uuid(row["server_id"]),
        name=bytes(row["encrypted_meta"]).decode("utf-8", errors="replace"),
        channel_type=row["channel_type"],
        position=row["position"],
        category_id=_uuid(row["category_id"]),
        is_private=bool(row["is_private"]),
        encrypted=bool(row["encrypted"]),
    )


def _row_to_role(row: sqlite3.Row) -> RoleRecord:
    return RoleRecord(
        id=uuid.UUID(row["id"]),
        server_id=uuid.UUID(row["server_id"]),
        name=row["name"],
        color=row["color"],
        permissions=row["permissions"],
        position=row["position"],
        is_default=bool(row["is_default"]),
    )


def _open(db_path: Path) -> sqlite3.Connection:
    # isolation_level=None: transactions are opened explicitly with BEGIN
    conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


async def _in_executor(fn: Callable[..., Any], *args: Any) -> Any:
    return await asyncio.get_running_loop().run_in_executor(None, partial(fn, *args))


class SqliteUnitOfWork:
    """Transactional mutations on a dedicated connection inside BEGIN IMMEDIATE."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def _exec(self, sql: str, params: tuple = ()) -> int:
        cur = await _in_executor(self._conn.execute, sql, params)
        return cur.rowcount

    async def lock_server(self, server_id: uuid.UUID) -> None:
        """No-op: BEGIN IMMEDIATE already holds the database-wide write lock."""

    async def delete_message_dependents(self, server_id: uuid.UUID) -> None:
        sid = str(server_id)
        for table in ("attachments", "reactions", "reports"):
            await self._exec(f"DELETE FROM {table} WHERE message_id IN ({_SERVER_MESSAGES})", (sid,))

    async def clear_system_channel(self, server_id: uuid.UUID) -> None:
        await self._exec("UPDATE servers SET system_channel_id = NULL WHERE id = ?", (str(server_id),))

    async def delete_channels(self, server_id: uuid.UUID) -> int:
        return await self._exec("DELETE FROM channels WHERE server_id = ?", (str(server_id),))

    async def delete_categories(self, server_id: uuid.UUID) -> int:
        return await self._exec("DELETE FROM channel_categories WHERE server_id = ?", (str(server_id),))

    async def delete_non_default_roles(self, server_id: uuid.UUID) -> int:
        return await self._exec(
            "DELETE FROM roles WHERE server_id = ? AND is_default = 0", (str(server_id),)
        )

    async def insert_category(self, category: CategoryRecord) -> None:
        await self._exec(
            "INSERT INTO channel_categories (id, server_id, name, position) VALUES (?, ?, ?, ?)",
            (str(category.id), str(category.server_id), category.name, category.position),
        )

    async def insert_channel(self, channel: ChannelRecord) -> None:
        await self._exec(
            "INSERT INTO channels (id, server_id, encrypted_meta, channel_type, position, "
            "category_id, is_private, encrypted, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                str(channel.id), _str(channel.server_id), channel.name.encode("utf-8"),
                channel.channel_type, channel.position, _str(channel.category_id),
                int(channel.is_private), int(channel.encrypted), _now(),
            ),
        )

    async def add_channel_member(self, channel_id: uuid.UUID, user_id: uuid.UUID) -> None:
        await self._exec(
            "INSERT INTO channel_members (id, channel_id, user_id, joined_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT (channel_id, user_id) DO NOTHING",
            (str(uuid.uuid4()), str(channel_id), str(user_id), _now()),
        )

    async def find_default_role(self, server_id: uuid.UUID) -> RoleRecord | None:
        cur = await _in_executor(
            self._conn.execute,
            "SELECT * FROM roles WHERE server_id = ? AND is_default = 1 LIMIT 1",
            (str(server_id),),
        )
        row = cur.fetchone()
        return _row_to_role(row) if row else None

    async def update_role_permissions(self, role_id: uuid.UUID, permissions: int) -> None:
        await self._exec("UPDATE roles SET permissions = ? WHERE id = ?", (permissions, str(role_id)))

    async def insert_role(self, role: RoleRecord) -> None:
        await self._exec(
            "INSERT INTO roles (id, server_id, name, color, permissions, position, is_default) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (str(role.id), str(role.server_id), role.name, role.color, role.permissions,
             role.position, int(role.is_default)),
        )

    async def upsert_overwrite(self, overwrite: OverwriteRecord) -> None:
        await self._exec(
            "INSERT INTO channel_permission_overwrites "
            "(channel_id, target_type, target_id, allow_bits, deny_bits) VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT (channel_id, target_type, target_id) "
            "DO UPDATE SET allow_bits = excluded.allow_bits, deny_bits = excluded.deny_bits",
            (str(overwrite.channel_id), overwrite.target_type, str(overwrite.target_id),
             overwrite.allow_bits, overwrite.deny_bits),
        )

    async def insert_message(self, message: MessageRow) -> None:
        await self._exec(
            "INSERT INTO messages (id, channel_id, sender_token, encrypted_body, timestamp, "
            "has_attachments, sender_id, reply_to_id, message_type) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                str(message.id), str(message.channel_id), message.sender_token,
                message.encrypted_body, _ts(message.timestamp), int(message.has_attachments),
                _str(message.sender_id), _str(message.reply_to_id), message.message_type,
            ),
        )


class SqliteStore:
    """SQLite-backed platform store.

    Sync sqlite3 operations run in the default thread-pool executor.
    Every write (units of work and seeding) is serialized behind one
    asyncio lock and runs on a connection of its own; reads use a shared
    autocommit connection and, in WAL mode, only see committed writes.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._write_lock: asyncio.Lock | None = None

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = _open(self._db_path)
        return self._conn

    async def _get_write_lock(self) -> asyncio.Lock:
        """Lazy lock creation so the store can be built outside an event loop."""
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        return self._write_lock

    async def _read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        def _fetch() -> list[sqlite3.Row]:
            return self._connect().execute(sql, params).fetchall()

        return await _in_executor(_fetch)

    async def _write(self, statements: list[tuple[str, tuple]]) -> None:
        def _apply() -> None:
            conn = _open(self._db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    for sql, params in statements:
                        conn.execute(sql, params)
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

        async with await self._get_write_lock():
            await _in_executor(_apply)

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Create tables and indexes if they don't exist."""
        await self._write([(sql, ()) for sql in _SCHEMA])

    async def close(self) -> None:
        def _close() -> None:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

        await _in_executor(_close)

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SqliteUnitOfWork]:
        async with await self._get_write_lock():
            conn = await _in_executor(_open, self._db_path)
            try:
                await _in_executor(conn.execute, "BEGIN IMMEDIATE")
                try:
                    yield SqliteUnitOfWork(conn)
                except BaseException:
                    await _in_executor(conn.execute, "ROLLBACK")
                    raise
                await _in_executor(conn.execute, "COMMIT")
            finally:
                await _in_executor(conn.close)

    # --- Reads ---

    async def find_user_by_id(self, user_id: uuid.UUID) -> UserRecord | None:
        rows = await self._read("SELECT * FROM users WHERE id = ?", (str(user_id),))
        if not rows:
            return None
        row = rows[0]
        return UserRecord(
            id=uuid.UUID(row["id"]),
            username=row["username"],
            display_name=row["display_name"],
            identity_key=bytes(row["identity_key"]),
        )

    async def find_server_by_id(self, server_id: uuid.UUID) -> ServerRecord | None:
        rows = await self._read("SELECT * FROM servers WHERE id = ?", (str(server_id),))
        if not rows:
            return None
        row = rows[0]
        return ServerRecord(
            id=uuid.UUID(row["id"]),
            name=row["name"],
            owner_id=uuid.UUID(row["owner_id"]),
            system_channel_id=_uuid(row["system_channel_id"]),
        )

    async def find_channel_by_id(self, channel_id: uuid.UUID) -> ChannelRecord | None:
        rows = await self._read("SELECT * FROM channels WHERE id = ?", (str(channel_id),))
        return _row_to_channel(rows[0]) if rows else None

    async def is_server_member(self, server_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        rows = await self._read(
            "SELECT 1 FROM server_members WHERE server_id = ? AND user_id = ?",
            (str(server_id), str(user_id)),
        )
        return bool(rows)

    async def get_member_permissions(self, server_id: uuid.UUID, user_id: uuid.UUID) -> tuple[bool, int]:
        server = await self.find_server_by_id(server_id)
        if server is None or not await self.is_server_member(server_id, user_id):
            return False, 0
        rows = await self._read(
            "SELECT r.permissions FROM roles r WHERE r.server_id = ? AND (r.is_default = 1 "
            "OR r.id IN (SELECT role_id FROM member_roles WHERE user_id = ?))",
            (str(server_id), str(user_id)),
        )
        bits = 0
        for row in rows:
            bits |= row["permissions"]
        return server.owner_id == user_id, bits

    async def recent_audit_log(self, server_id: uuid.UUID, limit: int = 50) -> list[AuditEntry]:
        rows = await self._read(
            "SELECT * FROM audit_log WHERE server_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (str(server_id), limit),
        )
        return [
            AuditEntry(
                id=uuid.UUID(r["id"]),
                server_id=uuid.UUID(r["server_id"]),
                actor_id=uuid.UUID(r["actor_id"]),
                action=r["action"],
                target_type=r["target_type"],
                target_id=_uuid(r["target_id"]),
                metadata=json.loads(r["metadata"]) if r["metadata"] else {},
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    async def list_categories(self, server_id: uuid.UUID) -> list[CategoryRecord]:
        rows = await self._read(
            "SELECT * FROM channel_categories WHERE server_id = ? ORDER BY position, id",
            (str(server_id),),
        )
        return [
            CategoryRecord(id=uuid.UUID(r["id"]), server_id=uuid.UUID(r["server_id"]),
                           name=r["name"], position=r["position"])
            for r in rows
        ]

    async def list_channels(self, server_id: uuid.UUID) -> list[ChannelRecord]:
        rows = await self._read(
            "SELECT * FROM channels WHERE server_id = ? ORDER BY position, id", (str(server_id),)
        )
        return [_row_to_channel(r) for r in rows]

    async def list_roles(self, server_id: uuid.UUID) -> list[RoleRecord]:
        rows = await self._read(
            "SELECT * FROM roles WHERE server_id = ? ORDER BY position, id", (str(server_id),)
        )
        return [_row_to_role(r) for r in rows]

    async def list_overwrites(self, channel_id: uuid.UUID) -> list[OverwriteRecord]:
        rows = await self._read(
            "SELECT * FROM channel_permission_overwrites WHERE channel_id = ? ORDER BY target_id",
            (str(channel_id),),
        )
        return [
            OverwriteRecord(
                channel_id=uuid.UUID(r["channel_id"]),
                target_type=r["target_type"],
                target_id=uuid.UUID(r["target_id"]),
                allow_bits=r["allow_bits"],
                deny_bits=r["deny_bits"],
            )
            for r in rows
        ]

    async def list_messages(self, channel_id: uuid.UUID) -> list[MessageRow]:
        rows = await self._read(
            "SELECT * FROM messages WHERE channel_id = ? ORDER BY timestamp, id", (str(channel_id),)
        )
        return [
            MessageRow(
                id=uuid.UUID(r["id"]),
                channel_id=uuid.UUID(r["channel_id"]),
                sender_token=bytes(r["sender_token"]),
                encrypted_body=bytes(r["encrypted_body"]),
                timestamp=datetime.fromisoformat(r["timestamp"]),
                has_attachments=bool(r["has_attachments"]),
                sender_id=_uuid(r["sender_id"]),
                reply_to_id=_uuid(r["reply_to_id"]),
                message_type=r["message_type"],
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
        await self._write([(
            "INSERT INTO audit_log (id, server_id, actor_id, action, target_type, target_id, "
            "metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                str(uuid.uuid4()), str(server_id), str(actor_id), action, target_type,
                _str(target_id), json.dumps(metadata) if metadata is not None else None, _now(),
            ),
        )])

    async def create_user(
        self, username: str, identity_key: bytes = b"", display_name: str | None = None,
        user_id: uuid.UUID | None = None,
    ) -> UserRecord:
        record = UserRecord(
            id=user_id or uuid.uuid4(), username=username,
            display_name=display_name, identity_key=identity_key,
        )
        await self._write([(
            "INSERT INTO users (id, username, display_name, identity_key, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (str(record.id), username, display_name, identity_key, _now()),
        )])
        return record

    async def create_server(self, name: str, owner_id: uuid.UUID) -> uuid.UUID:
        server_id = uuid.uuid4()
        sid, oid = str(server_id), str(owner_id)
        await self._write([
            ("INSERT INTO servers (id, name, owner_id, created_at) VALUES (?, ?, ?, ?)",
             (sid, name, oid, _now())),
            ("INSERT INTO roles (id, server_id, name, permissions, position, is_default) "
             "VALUES (?, ?, '@everyone', 0, 0, 1)", (str(uuid.uuid4()), sid)),
            ("INSERT INTO server_members (id, server_id, user_id, joined_at) VALUES (?, ?, ?, ?)",
             (str(uuid.uuid4()), sid, oid, _now())),
        ])
        return server_id

    async def add_server_member(self, server_id: uuid.UUID, user_id: uuid.UUID) -> None:
        await self._write([(
            "INSERT INTO server_members (id, server_id, user_id, joined_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT (server_id, user_id) DO NOTHING",
            (str(uuid.uuid4()), str(server_id), str(user_id), _now()),
        )])

    async def assign_role(self, role_id: uuid.UUID, user_id: uuid.UUID) -> None:
        await self._write([(
            "INSERT INTO member_roles (role_id, user_id) VALUES (?, ?) ON CONFLICT DO NOTHING",
            (str(role_id), str(user_id)),
        )])

    async def set_system_channel(self, server_id: uuid.UUID, channel_id: uuid.UUID | None) -> None:
        await self._write([(
            "UPDATE servers SET system_channel_id = ? WHERE id = ?", (_str(channel_id), str(server_id)),
        )])
