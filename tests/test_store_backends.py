"""Tests for store backends: protocol conformance, SQLite transactions, PostgreSQL wiring (mocked)."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from guildvault.models import CategoryRecord, ChannelRecord
from guildvault.store import PlatformStore, sqlite_backend
from guildvault.store.pg_backend import PostgresStore, PostgresUnitOfWork, _rowcount
from guildvault.store.sqlite_backend import SqliteStore


def test_backends_satisfy_protocol(tmp_path):
    assert isinstance(SqliteStore(str(tmp_path / "p.db")), PlatformStore)
    assert isinstance(PostgresStore("postgresql://localhost/test"), PlatformStore)


# --- SQLite ---


@pytest.mark.asyncio
async def test_unit_of_work_commits(store, server_id):
    cat = CategoryRecord(id=uuid.uuid4(), server_id=server_id, name="A")
    async with store.unit_of_work() as uow:
        await uow.insert_category(cat)
    assert [c.id for c in await store.list_categories(server_id)] == [cat.id]


@pytest.mark.asyncio
async def test_unit_of_work_rolls_back_on_error(store, server_id):
    with pytest.raises(RuntimeError):
        async with store.unit_of_work() as uow:
            await uow.insert_category(CategoryRecord(id=uuid.uuid4(), server_id=server_id, name="A"))
            raise RuntimeError("abort")
    assert await store.list_categories(server_id) == []


@pytest.mark.asyncio
async def test_uncommitted_work_invisible_to_reads(store, server_id):
    async with store.unit_of_work() as uow:
        await uow.insert_category(CategoryRecord(id=uuid.uuid4(), server_id=server_id, name="A"))
        assert await store.list_categories(server_id) == []
    assert len(await store.list_categories(server_id)) == 1


@pytest.mark.asyncio
async def test_reads_do_not_see_seeding_write_in_flight(store, monkeypatch):
    entered, release = threading.Event(), threading.Event()

    def _pause():
        entered.set()
        release.wait(5)
        return 1

    def _open_with_pause(db_path):
        conn = real_open(db_path)
        conn.create_function("gv_pause", 0, _pause)
        return conn

    real_open = sqlite_backend._open
    monkeypatch.setattr(sqlite_backend, "_open", _open_with_pause)

    uid = uuid.uuid4()
    writer = asyncio.create_task(store._write([
        ("INSERT INTO users (id, username, display_name, identity_key, created_at) VALUES (?, ?, ?, ?, ?)",
         (str(uid), "pending", None, b"", "2024-01-01T00:00:00.000000+00:00")),
        ("SELECT gv_pause()", ()),
    ]))
    try:
        assert await asyncio.to_thread(entered.wait, 5)
        assert await asyncio.wait_for(store.find_user_by_id(uid), 5) is None
    finally:
        release.set()
        await writer

    assert (await store.find_user_by_id(uid)).username == "pending"


@pytest.mark.asyncio
async def test_failed_seeding_write_rolls_back(store):
    uid = uuid.uuid4()
    insert = ("INSERT INTO users (id, username, display_name, identity_key, created_at) VALUES (?, ?, ?, ?, ?)",
              (str(uid), "dup", None, b"", "2024-01-01T00:00:00.000000+00:00"))
    with pytest.raises(sqlite3.IntegrityError):
        await store._write([insert, insert])
    assert await store.find_user_by_id(uid) is None


@pytest.mark.asyncio
async def test_delete_counts(store, server_id):
    async with store.unit_of_work() as uow:
        for i in range(3):
            await uow.insert_channel(ChannelRecord(id=uuid.uuid4(), server_id=server_id, name=f"c{i}"))
    async with store.unit_of_work() as uow:
        assert await uow.delete_channels(server_id) == 3
        assert await uow.delete_non_default_roles(server_id) == 0


@pytest.mark.asyncio
async def test_category_delete_detaches_channels(store, server_id):
    cat = CategoryRecord(id=uuid.uuid4(), server_id=server_id, name="A")
    ch = ChannelRecord(id=uuid.uuid4(), server_id=server_id, name="c", category_id=cat.id)
    async with store.unit_of_work() as uow:
        await uow.insert_category(cat)
        await uow.insert_channel(ch)
    async with store.unit_of_work() as uow:
        await uow.delete_categories(server_id)
    assert (await store.find_channel_by_id(ch.id)).category_id is None


@pytest.mark.asyncio
async def test_system_channel_blocks_channel_delete_until_cleared(store, server_id):
    ch = ChannelRecord(id=uuid.uuid4(), server_id=server_id, name="welcome")
    async with store.unit_of_work() as uow:
        await uow.insert_channel(ch)
    await store.set_system_channel(server_id, ch.id)

    with pytest.raises(Exception):
        async with store.unit_of_work() as uow:
            await uow.delete_channels(server_id)

    async with store.unit_of_work() as uow:
        await uow.clear_system_channel(server_id)
        assert await uow.delete_channels(server_id) == 1


@pytest.mark.asyncio
async def test_member_permissions_or_default_and_assigned(store, owner, server_id):
    member = await store.create_user("member")
    assert await store.get_member_permissions(server_id, member.id) == (False, 0)

    await store.add_server_member(server_id, member.id)
    assert await store.get_member_permissions(server_id, owner.id) == (True, 0)
    assert await store.get_member_permissions(server_id, member.id) == (False, 0)


# --- PostgreSQL (mocked asyncpg) ---


@pytest.mark.parametrize("status, expected", [
    ("DELETE 3", 3),
    ("UPDATE 0", 0),
    ("INSERT 0 1", 1),
    ("", 0),
    ("SELECT", 0),
])
def test_rowcount(status, expected):
    assert _rowcount(status) == expected


@pytest.mark.asyncio
async def test_pg_lock_server_uses_advisory_xact_lock():
    conn = AsyncMock()
    sid = uuid.uuid4()
    await PostgresUnitOfWork(conn).lock_server(sid)
    sql, arg = conn.execute.call_args.args
    assert "pg_advisory_xact_lock" in sql
    assert arg == str(sid)


@pytest.mark.asyncio
async def test_pg_delete_channels_parses_tag():
    conn = AsyncMock()
    conn.execute = AsyncMock(return_value="DELETE 7")
    assert await PostgresUnitOfWork(conn).delete_channels(uuid.uuid4()) == 7


@pytest.mark.asyncio
async def test_pg_unit_of_work_runs_in_transaction():
    conn = AsyncMock()
    conn.transaction = MagicMock()
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn

    store = PostgresStore("postgresql://localhost/test")
    store._pool = pool
    async with store.unit_of_work() as uow:
        assert isinstance(uow, PostgresUnitOfWork)

    conn.transaction.assert_called_once()
    conn.transaction.return_value.__aenter__.assert_awaited_once()
    conn.transaction.return_value.__aexit__.assert_awaited_once()


@pytest.mark.asyncio
async def test_pg_requires_initialize():
    store = PostgresStore("postgresql://localhost/test")
    with pytest.raises(RuntimeError, match="not initialized"):
        async with store.unit_of_work():
            pass
