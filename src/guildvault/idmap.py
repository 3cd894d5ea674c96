"""Per-restore translation from backup-local identifiers to freshly minted ids."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field


@dataclass
class IdentifierMap:
    """Three independent lookup tables, one per entity kind.

    Created by a single restore call and threaded through its steps.
    Never shared across calls.
    """

    categories: dict[str, uuid.UUID] = field(default_factory=dict)
    roles: dict[str, uuid.UUID] = field(default_factory=dict)
    channels: dict[str, uuid.UUID] = field(default_factory=dict)

    def map_category(self, local_id: str, new_id: uuid.UUID) -> None:
        self.categories[local_id] = new_id

    def map_role(self, local_id: str, new_id: uuid.UUID) -> None:
        self.roles[local_id] = new_id

    def map_channel(self, local_id: str, new_id: uuid.UUID) -> None:
        self.channels[local_id] = new_id

    def category(self, local_id: str | None) -> uuid.UUID | None:
        """Resolve a category reference; absent or dangling → None."""
        if local_id is None:
            return None
        return self.categories.get(local_id)

    def role(self, local_id: str) -> uuid.UUID | None:
        return self.roles.get(local_id)

    def channel(self, local_id: str) -> uuid.UUID | None:
        return self.channels.get(local_id)

    def channel_id_map(self) -> dict[str, str]:
        """Channel mapping as strings, for the caller's later message imports."""
        return {old: str(new) for old, new in self.channels.items()}
