"""Message replay: insert a batch of historical messages into a restored channel.

Original timestamps and sender provenance are kept; message ids are always
freshly minted. A batch commits whole or not at all. Deduplication across
batches is the caller's concern.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Sequence

from guildvault.access import require_manage_server
from guildvault.config import LimitsConfig
from guildvault.errors import GuildVaultError, InternalError, NotFoundError, ValidationError
from guildvault.logging_setup import log_context
from guildvault.models import ImportMessagesResponse, MessageRecord, MessageRow

if TYPE_CHECKING:
    from guildvault.store.backend import PlatformStore

logger = logging.getLogger("guildvault.importer")

# RFC 3339 date-time with a mandatory offset; fraction of any length.
_RFC3339_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)
_FALLBACK_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def parse_timestamp(raw: str) -> datetime:
    """Parse an export timestamp and normalize it to UTC.

    Accepts RFC 3339 with an offset (``2024-05-01T10:00:00+02:00``,
    ``2024-05-01T08:00:00.123456789Z``) and falls back to the fractional
    UTC form ``%Y-%m-%dT%H:%M:%S.%fZ``. Raises ValidationError otherwise.
    """
    m = _RFC3339_RE.match(raw)
    if m:
        date, clock, fraction, offset = m.groups()
        # datetime carries microseconds only; extra digits are truncated
        micro = f".{(fraction or '')[:6].ljust(6, '0')}"
        offset = "+00:00" if offset in ("Z", "z") else offset
        try:
            return datetime.fromisoformat(f"{date}T{clock}{micro}{offset}").astimezone(timezone.utc)
        except (ValueError, OverflowError):
            # out of range after shifting to UTC, e.g. 0001-01-01T00:30:00+01:00
            pass
    try:
        return datetime.strptime(raw, _FALLBACK_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        raise ValidationError(f"Invalid timestamp: {raw}")


def _decode_b64(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"Invalid base64 {field}")


def _optional_uuid(value: str | None) -> uuid.UUID | None:
    """Unparseable cross-references degrade to absent."""
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


def prepare_message(channel_id: uuid.UUID, record: MessageRecord) -> MessageRow:
    """Decode one exported record into a row with a fresh id. Raises ValidationError."""
    return MessageRow(
        id=uuid.uuid4(),
        channel_id=channel_id,
        sender_token=_decode_b64(record.sender_token, "sender_token"),
        encrypted_body=_decode_b64(record.encrypted_body, "encrypted_body"),
        timestamp=parse_timestamp(record.timestamp),
        has_attachments=record.has_attachments,
        sender_id=_optional_uuid(record.sender_id),
        reply_to_id=_optional_uuid(record.reply_to_id),
        message_type=record.message_type,
    )


class MessageImporter:
    def __init__(self, store: "PlatformStore", limits: LimitsConfig | None = None) -> None:
        self._store = store
        self._limits = limits or LimitsConfig()

    async def import_batch(
        self, user_id: uuid.UUID, channel_id: uuid.UUID, messages: Sequence[MessageRecord]
    ) -> ImportMessagesResponse:
        with log_context(operation="import", channel_id=channel_id, actor_id=user_id):
            return await self._import(user_id, channel_id, messages)

    async def _import(
        self, user_id: uuid.UUID, channel_id: uuid.UUID, messages: Sequence[MessageRecord]
    ) -> ImportMessagesResponse:
        max_batch = self._limits.max_import_batch
        if len(messages) > max_batch:
            raise ValidationError(f"Too many messages per batch (max {max_batch})")

        channel = await self._store.find_channel_by_id(channel_id)
        if channel is None:
            raise NotFoundError("Channel not found")
        if channel.server_id is None:
            raise ValidationError("Cannot import messages to DM channel")
        server_id = channel.server_id

        await require_manage_server(self._store, server_id, user_id, require_membership=False)

        # Any bad record rejects the whole batch before the transaction opens.
        rows = [prepare_message(channel_id, record) for record in messages]

        try:
            async with self._store.unit_of_work() as uow:
                await uow.lock_server(server_id)
                for row in rows:
                    await uow.insert_message(row)
        except GuildVaultError:
            raise
        except Exception as exc:
            logger.exception("import: batch for channel %s rolled back", channel_id)
            raise InternalError("Message import failed") from exc

        logger.info("import: %d messages into channel %s", len(rows), channel_id)
        return ImportMessagesResponse(imported=len(rows))
