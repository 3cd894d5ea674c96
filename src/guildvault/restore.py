"""Structural restore: rebuild a server's categories, channels, roles and
permission overwrites from a backup, atomically.

Backup entities carry backup-local string ids. Each restore mints fresh
platform ids and threads an IdentifierMap through the steps so later
entities can reference earlier ones. References that do not resolve are
degraded (no category) or skipped (overwrites), never errors.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from guildvault.access import require_manage_server
from guildvault.config import LimitsConfig
from guildvault.errors import GuildVaultError, InternalError, ValidationError
from guildvault.events import SERVER_UPDATED, BackgroundDispatcher, EventBus
from guildvault.idmap import IdentifierMap
from guildvault.logging_setup import log_context
from guildvault.models import (
    DIRECT_CHANNEL_TYPES,
    BackupCategory,
    BackupChannel,
    BackupPermissionOverwrite,
    BackupRole,
    CategoryRecord,
    ChannelRecord,
    OverwriteRecord,
    OverwriteTarget,
    RestoreServerRequest,
    RestoreServerResponse,
    RoleRecord,
)

if TYPE_CHECKING:
    from guildvault.audit import AuditLogger
    from guildvault.store.backend import PlatformStore, UnitOfWork

logger = logging.getLogger("guildvault.restore")


@dataclass
class _Tally:
    categories_created: int = 0
    channels_created: int = 0
    roles_created: int = 0
    roles_updated: int = 0
    overwrites_applied: int = 0
    default_role_missing: bool = False


class StructuralRestorer:
    """Replaces a server's whole structural hierarchy with a backup's content."""

    def __init__(
        self,
        store: "PlatformStore",
        audit: "AuditLogger",
        bus: EventBus,
        dispatcher: BackgroundDispatcher,
        limits: LimitsConfig | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._bus = bus
        self._dispatcher = dispatcher
        self._limits = limits or LimitsConfig()

    def validate(self, backup: RestoreServerRequest) -> None:
        """Check caps against the entire backup. Raises ValidationError."""
        lim = self._limits
        if len(backup.categories) > lim.max_categories:
            raise ValidationError(f"Too many categories (max {lim.max_categories})")
        if len(backup.channels) > lim.max_channels:
            raise ValidationError(f"Too many channels (max {lim.max_channels})")
        if len(backup.roles) > lim.max_roles:
            raise ValidationError(f"Too many roles (max {lim.max_roles})")

    async def restore(
        self, user_id: uuid.UUID, server_id: uuid.UUID, backup: RestoreServerRequest
    ) -> RestoreServerResponse:
        with log_context(operation="restore", server_id=server_id, actor_id=user_id):
            return await self._restore(user_id, server_id, backup)

    async def _restore(
        self, user_id: uuid.UUID, server_id: uuid.UUID, backup: RestoreServerRequest
    ) -> RestoreServerResponse:
        await require_manage_server(self._store, server_id, user_id)
        self.validate(backup)

        ids = IdentifierMap()
        tally = _Tally()
        try:
            async with self._store.unit_of_work() as uow:
                await uow.lock_server(server_id)
                await self._wipe(uow, server_id)
                await self._create_categories(uow, server_id, backup.categories, ids, tally)
                await self._create_channels(uow, server_id, user_id, backup.channels, ids, tally)
                await self._apply_roles(uow, server_id, backup.roles, ids, tally)
                await self._apply_overwrites(uow, backup.permission_overwrites, ids, tally)
        except GuildVaultError:
            raise
        except Exception as exc:
            logger.exception("restore: server %s rolled back", server_id)
            raise InternalError("Server restore failed") from exc

        logger.info(
            "restore: server %s rebuilt (categories=%d channels=%d roles=%d/%d overwrites=%d)",
            server_id, tally.categories_created, tally.channels_created,
            tally.roles_created, tally.roles_updated, tally.overwrites_applied,
        )
        self._after_commit(user_id, server_id, backup, tally)

        return RestoreServerResponse(
            categories_created=tally.categories_created,
            channels_created=tally.channels_created,
            roles_created=tally.roles_created,
            roles_updated=tally.roles_updated,
            overwrites_applied=tally.overwrites_applied,
            channel_id_map=ids.channel_id_map(),
        )

    # --- Steps (all inside one unit of work) ---

    async def _wipe(self, uow: "UnitOfWork", server_id: uuid.UUID) -> None:
        # Order matters: dependents without foreign keys first, then the
        # system channel pointer, then channels, categories, roles.
        await uow.delete_message_dependents(server_id)
        await uow.clear_system_channel(server_id)
        channels = await uow.delete_channels(server_id)
        categories = await uow.delete_categories(server_id)
        roles = await uow.delete_non_default_roles(server_id)
        logger.debug(
            "restore: wiped server %s (channels=%s categories=%s roles=%s)",
            server_id, channels, categories, roles,
        )

    async def _create_categories(
        self, uow: "UnitOfWork", server_id: uuid.UUID,
        categories: list[BackupCategory], ids: IdentifierMap, tally: _Tally,
    ) -> None:
        for cat in categories:
            record = CategoryRecord(id=uuid.uuid4(), server_id=server_id, name=cat.name, position=cat.position)
            await uow.insert_category(record)
            ids.map_category(cat.local_id, record.id)
            tally.categories_created += 1

    async def _create_channels(
        self, uow: "UnitOfWork", server_id: uuid.UUID, user_id: uuid.UUID,
        channels: list[BackupChannel], ids: IdentifierMap, tally: _Tally,
    ) -> None:
        for ch in channels:
            if ch.channel_type in DIRECT_CHANNEL_TYPES:
                continue
            record = ChannelRecord(
                id=uuid.uuid4(),
                server_id=server_id,
                name=ch.name,
                channel_type=ch.channel_type,
                position=ch.position,
                category_id=ids.category(ch.category_local_id),
                is_private=ch.is_private,
                encrypted=False,
            )
            await uow.insert_channel(record)
            await uow.add_channel_member(record.id, user_id)
            ids.map_channel(ch.local_id, record.id)
            tally.channels_created += 1

    async def _apply_roles(
        self, uow: "UnitOfWork", server_id: uuid.UUID,
        roles: list[BackupRole], ids: IdentifierMap, tally: _Tally,
    ) -> None:
        default_role = await uow.find_default_role(server_id)
        for role in roles:
            if role.is_default:
                if default_role is None:
                    tally.default_role_missing = True
                    logger.warning(
                        "restore: server %s has no default role; backup default-role permissions not applied",
                        server_id,
                    )
                    continue
                await uow.update_role_permissions(default_role.id, role.permissions)
                ids.map_role(role.local_id, default_role.id)
                tally.roles_updated += 1
                continue

            record = RoleRecord(
                id=uuid.uuid4(),
                server_id=server_id,
                name=role.name,
                color=role.color,
                permissions=role.permissions,
                position=role.position,
                is_default=False,
            )
            await uow.insert_role(record)
            ids.map_role(role.local_id, record.id)
            tally.roles_created += 1

    async def _apply_overwrites(
        self, uow: "UnitOfWork", overwrites: list[BackupPermissionOverwrite],
        ids: IdentifierMap, tally: _Tally,
    ) -> None:
        for ow in overwrites:
            # Member ids belong to another platform instance; never applied.
            if ow.target_type != OverwriteTarget.ROLE.value:
                continue
            channel_id = ids.channel(ow.channel_local_id)
            role_id = ids.role(ow.target_id)
            if channel_id is None or role_id is None:
                continue
            await uow.upsert_overwrite(OverwriteRecord(
                channel_id=channel_id,
                target_type=OverwriteTarget.ROLE.value,
                target_id=role_id,
                allow_bits=ow.allow,
                deny_bits=ow.deny,
            ))
            tally.overwrites_applied += 1

    # --- Post-commit, best effort ---

    def _after_commit(
        self, user_id: uuid.UUID, server_id: uuid.UUID, backup: RestoreServerRequest, tally: _Tally
    ) -> None:
        metadata = {
            "source_server_name": backup.server.name if backup.server else None,
            "categories_created": tally.categories_created,
            "channels_created": tally.channels_created,
            "roles_created": tally.roles_created,
        }
        if tally.default_role_missing:
            metadata["default_role_missing"] = True
        self._dispatcher.spawn(
            self._audit.record(server_id, user_id, "server_restore", "server", server_id, metadata),
            name="audit:server_restore",
        )
        self._dispatcher.spawn(
            self._bus.publish(server_id, SERVER_UPDATED, {"server_id": str(server_id)}),
            name="publish:server_updated",
        )
