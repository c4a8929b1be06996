"""
Discord integration for guild role membership.
"""

from membersync.integrations.discord.client import DiscordRoleClient
from membersync.integrations.discord.exceptions import (
    RoleClientError,
    RoleRateLimitError,
    RoleTransientError,
    RoleValidationError,
)

__all__ = [
    "DiscordRoleClient",
    "RoleClientError",
    "RoleRateLimitError",
    "RoleTransientError",
    "RoleValidationError",
]
