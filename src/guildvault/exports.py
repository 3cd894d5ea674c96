"""Recording client-side exports in the server audit log."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from guildvault.audit import AuditLogger
    from guildvault.models import LogExportRequest

_SCOPE_ACTIONS = {"server": "server_export", "channel": "channel_export"}


def export_action(scope: str) -> str:
    return _SCOPE_ACTIONS.get(scope, "export")


async def log_export(audit: "AuditLogger", user_id: uuid.UUID, req: "LogExportRequest") -> dict:
    """Best-effort audit of an export. DM exports (no server) record nothing."""
    if req.server_id is not None:
        await audit.record(
            req.server_id,
            user_id,
            export_action(req.scope),
            "channel" if req.channel_id is not None else None,
            req.channel_id,
            {"message_count": req.message_count, "scope": req.scope},
        )
    return {"logged": True}
