"""
Reconciler configuration.

All tunables are enumerated once at startup into a frozen ReconcilerConfig
and injected into the components that need them; nothing reads the
environment ad hoc after startup.

Sources, in order of precedence:
1. Optional YAML file (path argument or MEMBERSYNC_CONFIG)
2. Environment variables
3. Defaults below

Usage:
    from membersync.config.settings import load_config

    config = load_config()
    config.paid_role_id
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from membersync.database.session import normalize_database_url

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 7
DEFAULT_SWEEP_BATCH_SIZE = 1000
DEFAULT_SWEEP_INTERVAL_SECONDS = 86400
DEFAULT_ROLE_SYNC_MAX_ATTEMPTS = 3
DEFAULT_ROLE_SYNC_BASE_DELAY_SECONDS = 1.0
DEFAULT_ROLE_SYNC_MAX_DELAY_SECONDS = 30.0
DEFAULT_DISCORD_API_BASE = "https://discord.com/api/v10"

# field name -> environment variable
_ENV_VARS = {
    "database_url": "DATABASE_URL",
    "paid_role_id": "DISCORD_PAID_ROLE_ID",
    "guild_id": "DISCORD_GUILD_ID",
    "grace_period_days": "GRACE_PERIOD_DAYS",
    "sweep_batch_size": "SWEEP_BATCH_SIZE",
    "sweep_interval_seconds": "SWEEP_INTERVAL_SECONDS",
    "role_sync_max_attempts": "ROLE_SYNC_MAX_ATTEMPTS",
    "role_sync_base_delay_seconds": "ROLE_SYNC_BASE_DELAY_SECONDS",
    "role_sync_max_delay_seconds": "ROLE_SYNC_MAX_DELAY_SECONDS",
    "discord_bot_token": "DISCORD_BOT_TOKEN",
    "discord_api_base": "DISCORD_API_BASE",
    "stripe_api_key": "STRIPE_SECRET_KEY",
    "stripe_webhook_secret": "STRIPE_WEBHOOK_SECRET",
    "rolebot_webhook_url": "ROLEBOT_WEBHOOK_URL",
}


class ConfigError(ValueError):
    """Raised when configuration is missing or malformed."""
    pass


@dataclass(frozen=True)
class ReconcilerConfig:
    """Startup configuration for the reconciliation engine."""
    database_url: str
    paid_role_id: str
    guild_id: str
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    sweep_batch_size: int = DEFAULT_SWEEP_BATCH_SIZE
    sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS
    role_sync_max_attempts: int = DEFAULT_ROLE_SYNC_MAX_ATTEMPTS
    role_sync_base_delay_seconds: float = DEFAULT_ROLE_SYNC_BASE_DELAY_SECONDS
    role_sync_max_delay_seconds: float = DEFAULT_ROLE_SYNC_MAX_DELAY_SECONDS
    discord_bot_token: Optional[str] = None
    discord_api_base: str = DEFAULT_DISCORD_API_BASE
    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    rolebot_webhook_url: Optional[str] = None

    def __post_init__(self):
        if not self.database_url:
            raise ConfigError("database_url is required (DATABASE_URL)")
        if not self.paid_role_id:
            raise ConfigError("paid_role_id is required (DISCORD_PAID_ROLE_ID)")
        if not self.guild_id:
            raise ConfigError("guild_id is required (DISCORD_GUILD_ID)")
        if self.grace_period_days < 0:
            raise ConfigError("grace_period_days must be >= 0")
        if self.sweep_batch_size <= 0:
            raise ConfigError("sweep_batch_size must be positive")
        if self.sweep_interval_seconds <= 0:
            raise ConfigError("sweep_interval_seconds must be positive")
        if self.role_sync_max_attempts < 1:
            raise ConfigError("role_sync_max_attempts must be >= 1")
        object.__setattr__(self, "database_url", normalize_database_url(self.database_url))


def _coerce(name: str, raw: Any) -> Any:
    """Convert a raw env/YAML value to the declared field type."""
    if raw is None:
        return None
    field_type = {f.name: f.type for f in fields(ReconcilerConfig)}[name]
    try:
        if field_type in (int, "int"):
            return int(raw)
        if field_type in (float, "float"):
            return float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be numeric, got {raw!r}")
    return str(raw)


def _from_mapping(values: Mapping[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(ReconcilerConfig)}
    unknown = set(values) - known
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {sorted(unknown)}")
    return {name: _coerce(name, value) for name, value in values.items() if value is not None}


def _read_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    values = {}
    for name, env_var in _ENV_VARS.items():
        raw = environ.get(env_var)
        if raw not in (None, ""):
            values[name] = raw
    return _from_mapping(values)


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")
    return _from_mapping(raw)


def load_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ReconcilerConfig:
    """
    Build the ReconcilerConfig from environment and optional YAML overlay.

    Args:
        path: YAML config path (default: MEMBERSYNC_CONFIG env var, if set)
        environ: Environment mapping (default: os.environ)

    Raises:
        ConfigError: If required values are missing or malformed
    """
    environ = os.environ if environ is None else environ
    values = _read_env(environ)

    path = path or environ.get("MEMBERSYNC_CONFIG")
    if path:
        values.update(_read_yaml(Path(path)))
        logger.info("Loaded config file", extra={"path": str(path)})

    try:
        config = ReconcilerConfig(**values)
    except TypeError as e:
        raise ConfigError(f"Incomplete configuration: {e}")

    logger.info(
        "Reconciler configuration loaded",
        extra={
            "guild_id": config.guild_id,
            "grace_period_days": config.grace_period_days,
            "sweep_batch_size": config.sweep_batch_size,
            "sweep_interval_seconds": config.sweep_interval_seconds,
            "stripe_configured": bool(config.stripe_api_key),
            "discord_configured": bool(config.discord_bot_token),
        }
    )
    return config

