"""guildvault - verify, restore and replay exported community backups."""

__version__ = "0.3.0"
