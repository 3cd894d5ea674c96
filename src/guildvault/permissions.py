"""Permission bit flags and the capability predicate.

Bitmasks are stored as signed 64-bit integers; only bit positions matter here.
"""

from __future__ import annotations

ADMINISTRATOR = 1 << 0
MANAGE_SERVER = 1 << 1
MANAGE_ROLES = 1 << 2
MANAGE_CHANNELS = 1 << 3
KICK_MEMBERS = 1 << 4
BAN_MEMBERS = 1 << 5
MANAGE_MESSAGES = 1 << 6
VIEW_AUDIT_LOG = 1 << 7
VIEW_CHANNELS = 1 << 8
SEND_MESSAGES = 1 << 9
ATTACH_FILES = 1 << 10
ADD_REACTIONS = 1 << 11


def has_permission(bits: int, flag: int) -> bool:
    """True if ``bits`` grants ``flag``. ADMINISTRATOR grants everything."""
    if bits & ADMINISTRATOR:
        return True
    return bits & flag == flag
