"""Tests for the store-backed audit logger and export logging."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from guildvault.audit import AuditLogger
from guildvault.exports import export_action, log_export
from guildvault.models import LogExportRequest


class TestAuditLogger:
    def test_disabled_without_store(self):
        assert AuditLogger(None).enabled is False

    def test_disabled_by_flag(self):
        assert AuditLogger(AsyncMock(), enabled=False).enabled is False

    @pytest.mark.asyncio
    async def test_record_noop_when_disabled(self):
        store = AsyncMock()
        await AuditLogger(store, enabled=False).record(uuid.uuid4(), uuid.uuid4(), "server_restore")
        store.insert_audit_log.assert_not_called()

    @pytest.mark.asyncio
    async def test_record_writes_entry(self, store, owner, server_id):
        audit = AuditLogger(store)
        await audit.record(server_id, owner.id, "server_restore", "server", server_id, {"roles_created": 2})

        entries = await audit.read_recent(server_id)
        assert len(entries) == 1
        assert entries[0].action == "server_restore"
        assert entries[0].target_id == server_id
        assert entries[0].metadata == {"roles_created": 2}

    @pytest.mark.asyncio
    async def test_read_recent_newest_first_and_limited(self, store, owner, server_id):
        audit = AuditLogger(store)
        for i in range(3):
            await audit.record(server_id, owner.id, "export", metadata={"n": i})

        entries = await audit.read_recent(server_id, 2)
        assert [e.metadata["n"] for e in entries] == [2, 1]

    @pytest.mark.asyncio
    async def test_record_swallows_store_errors(self, caplog):
        store = AsyncMock()
        store.insert_audit_log = AsyncMock(side_effect=RuntimeError("disk full"))
        await AuditLogger(store).record(uuid.uuid4(), uuid.uuid4(), "server_restore")
        assert any("failed to record server_restore" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_read_recent_empty_when_disabled(self):
        assert await AuditLogger(None).read_recent(uuid.uuid4()) == []


# --- export logging ---


@pytest.mark.parametrize("scope, action", [
    ("server", "server_export"),
    ("channel", "channel_export"),
    ("dm", "export"),
    ("anything", "export"),
])
def test_export_action(scope, action):
    assert export_action(scope) == action


@pytest.mark.asyncio
async def test_log_channel_export(store, owner, server_id):
    audit = AuditLogger(store)
    channel_id = uuid.uuid4()
    req = LogExportRequest(scope="channel", server_id=server_id, channel_id=channel_id, message_count=12)

    assert await log_export(audit, owner.id, req) == {"logged": True}

    entry = (await audit.read_recent(server_id))[0]
    assert entry.action == "channel_export"
    assert entry.actor_id == owner.id
    assert entry.target_type == "channel"
    assert entry.target_id == channel_id
    assert entry.metadata == {"message_count": 12, "scope": "channel"}


@pytest.mark.asyncio
async def test_log_server_export_has_no_target(store, owner, server_id):
    audit = AuditLogger(store)
    await log_export(audit, owner.id, LogExportRequest(scope="server", server_id=server_id))
    entry = (await audit.read_recent(server_id))[0]
    assert entry.target_type is None
    assert entry.target_id is None


@pytest.mark.asyncio
async def test_log_export_without_server_records_nothing():
    audit = AsyncMock()
    result = await log_export(audit, uuid.uuid4(), LogExportRequest(scope="dm", message_count=3))
    assert result == {"logged": True}
    audit.record.assert_not_called()


@pytest.mark.asyncio
async def test_log_export_succeeds_when_audit_write_fails():
    store = AsyncMock()
    store.insert_audit_log = AsyncMock(side_effect=RuntimeError("down"))
    req = LogExportRequest(scope="server", server_id=uuid.uuid4())
    assert await log_export(AuditLogger(store), uuid.uuid4(), req) == {"logged": True}
