"""
Startup configuration.
"""

from membersync.config.settings import (
    ConfigError,
    ReconcilerConfig,
    load_config,
)

__all__ = ["ConfigError", "ReconcilerConfig", "load_config"]
