"""Configuration system for guildvault. YAML-based with env var expansion and env var overlay."""

from __future__ import annotations

import copy
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# --- Config Models ---


class StoreConfig(BaseModel):
    provider: str = "sqlite"
    path: str = "~/.guildvault/platform.db"
    dsn: str = ""  # postgresql only; never logged
    pool_min: int = 2
    pool_max: int = 10


class ServeConfig(BaseModel):
    port: int = 8780
    host: str = "127.0.0.1"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    format: str = "text"   # "text" or "json"
    level: str = "WARNING"


class AuthConfig(BaseModel):
    enabled: bool = True
    jwt_secret: str = ""  # set via YAML or GUILDVAULT_AUTH_JWT_SECRET
    jwt_expiry_hours: int = 24


class AuditConfig(BaseModel):
    """Audit records go to the store's audit_log table."""
    enabled: bool = True


class LimitsConfig(BaseModel):
    """Structural caps checked before a restore or import begins."""
    max_categories: int = 50
    max_channels: int = 500
    max_roles: int = 250
    max_import_batch: int = 200


class Config(BaseModel):
    store: StoreConfig = Field(default_factory=StoreConfig)
    serve: ServeConfig = Field(default_factory=ServeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)


# --- Helpers ---

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def get_config_dir() -> Path:
    """Get or create guildvault config directory."""
    config_dir = Path.home() / ".guildvault"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    return get_config_dir() / "config.yaml"


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR} in strings."""
    if isinstance(data, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), data)
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(v) for v in data]
    return data


def expand_path(path: str) -> Path:
    """Expand ~ and env vars in path string."""
    return Path(os.path.expanduser(os.path.expandvars(path)))


# Mapping of GUILDVAULT_* env var suffixes to (section, field) tuples.
_ENV_VAR_MAP: dict[str, tuple[str, str]] = {
    "SERVE_PORT": ("serve", "port"),
    "SERVE_HOST": ("serve", "host"),
    "STORE_PROVIDER": ("store", "provider"),
    "STORE_PATH": ("store", "path"),
    "STORE_DSN": ("store", "dsn"),
    "LOG_FORMAT": ("logging", "format"),
    "LOG_LEVEL": ("logging", "level"),
    "AUTH_ENABLED": ("auth", "enabled"),
    "AUTH_JWT_SECRET": ("auth", "jwt_secret"),
    "AUDIT_ENABLED": ("audit", "enabled"),
    "LIMITS_MAX_IMPORT_BATCH": ("limits", "max_import_batch"),
}


def _get_section_models() -> dict[str, type[BaseModel]]:
    return {
        "store": StoreConfig,
        "serve": ServeConfig,
        "logging": LoggingConfig,
        "auth": AuthConfig,
        "audit": AuditConfig,
        "limits": LimitsConfig,
    }


def _coerce(section: str, field: str, raw_val: str) -> Any:
    """Convert a string to the type of the section field's annotation."""
    model_cls = _get_section_models().get(section)
    target_type: type = str
    if model_cls is not None:
        field_info = model_cls.model_fields.get(field)
        if field_info is not None:
            ann = field_info.annotation
            if ann is int:
                target_type = int
            elif ann is bool:
                target_type = bool

    try:
        if target_type is bool:
            return raw_val.lower() in ("1", "true", "yes")
        return target_type(raw_val)
    except (ValueError, TypeError):
        return raw_val  # fall back to string; Pydantic will validate


def _apply_env_overlay(data: dict[str, Any]) -> dict[str, Any]:
    """Apply GUILDVAULT_* environment variables on top of YAML data dict.

    Converts values to the correct type based on Pydantic field annotations.
    Secret fields (dsn, jwt_secret) are applied but never logged.
    """
    for env_suffix, (section, field) in _ENV_VAR_MAP.items():
        raw_val = os.environ.get(f"GUILDVAULT_{env_suffix}")
        if raw_val is None:
            continue
        if section not in data or not isinstance(data[section], dict):
            data[section] = {}
        data[section][field] = _coerce(section, field, raw_val)

    return data


def _read_raw(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def load_config(path: Path | None = None) -> Config:
    """Load config from YAML, expanding env vars, then applying GUILDVAULT_* env overlay."""
    data = _expand_env_vars(_read_raw(path or get_config_path()))
    return Config(**_apply_env_overlay(data))


def set_config_value(key_path: str, value: str, path: Path | None = None) -> Config:
    """Set one field via dot notation (e.g. 'serve.port'), save, return the reloaded config.

    Edits the raw YAML so ${VAR} placeholders elsewhere in the file are kept.
    Raises ValueError for unknown keys or values the field rejects; the file
    is left untouched in that case.
    """
    config_path = path or get_config_path()
    section, _, field = key_path.partition(".")
    model_cls = _get_section_models().get(section)
    if model_cls is None or field not in model_cls.model_fields:
        raise ValueError(f"Unknown config key: {key_path}")

    raw = _read_raw(config_path)
    if not isinstance(raw.get(section), dict):
        raw[section] = {}
    raw[section][field] = _coerce(section, field, value)

    # pydantic's ValidationError is a ValueError
    Config(**_apply_env_overlay(_expand_env_vars(copy.deepcopy(raw))))

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.dump(raw, f, default_flow_style=False, sort_keys=False)
    return load_config(config_path)


def get_config_value(config: Config, key_path: str) -> Any:
    """Get nested config value via dot notation (e.g. 'store.provider')."""
    obj: Any = config
    for part in key_path.split("."):
        if isinstance(obj, BaseModel):
            obj = getattr(obj, part, None)
        elif isinstance(obj, dict):
            obj = obj.get(part)
        else:
            return None
    return obj
