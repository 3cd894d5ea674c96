"""Audit sink for guildvault. Writes server-scoped audit records to the store.

Best-effort: a failed write is logged and swallowed, never surfaced to the
caller of the operation being audited.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from guildvault.models import AuditEntry
    from guildvault.store.backend import PlatformStore

logger = logging.getLogger("guildvault")


class AuditLogger:
    """Append-only audit trail backed by the store's audit_log table.

    When disabled, record() is a no-op.
    """

    def __init__(self, store: "PlatformStore | None", enabled: bool = True) -> None:
        self._store = store
        self._enabled = enabled and store is not None

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def record(
        self,
        server_id: uuid.UUID,
        actor_id: uuid.UUID,
        action: str,
        target_type: str | None = None,
        target_id: uuid.UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Write one audit record. Never raises."""
        if not self._enabled or self._store is None:
            return
        try:
            await self._store.insert_audit_log(
                server_id, actor_id, action, target_type, target_id, metadata
            )
        except Exception as exc:
            logger.warning("audit: failed to record %s for server %s: %s", action, server_id, exc)

    async def read_recent(self, server_id: uuid.UUID, n: int = 50) -> list["AuditEntry"]:
        """Newest first. Empty when disabled."""
        if not self._enabled or self._store is None:
            return []
        return await self._store.recent_audit_log(server_id, min(n, 1000))
