"""Authorization checks shared by restore, import and audit reads."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from guildvault.errors import ForbiddenError
from guildvault.permissions import MANAGE_SERVER, has_permission

if TYPE_CHECKING:
    from guildvault.store.backend import PlatformStore


async def require_manage_server(
    store: "PlatformStore",
    server_id: uuid.UUID,
    user_id: uuid.UUID,
    require_membership: bool = True,
) -> None:
    """Raise ForbiddenError unless the user owns the server or holds MANAGE_SERVER.

    With require_membership, non-members are rejected with their own message
    before permissions are consulted.
    """
    if require_membership and not await store.is_server_member(server_id, user_id):
        raise ForbiddenError("Not a member of this server")
    is_owner, bits = await store.get_member_permissions(server_id, user_id)
    if not is_owner and not has_permission(bits, MANAGE_SERVER):
        raise ForbiddenError("Missing MANAGE_SERVER permission")
