"""
Discord REST client for guild role membership.

This client handles:
- Granting a role to a guild member
- Revoking a role from a guild member
- Listing a member's current roles

Every failure is raised as a RoleClientError subclass; retrying is the
caller's job (see services/role_sync.py).

Documentation: https://discord.com/developers/docs/resources/guild
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from membersync.integrations.discord.exceptions import (
    RoleClientError,
    RoleRateLimitError,
    RoleTransientError,
    RoleValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://discord.com/api/v10"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0
AUDIT_LOG_REASON = "membersync tier reconciliation"


def _retry_after(response: httpx.Response) -> Optional[float]:
    """Retry hint in seconds from the Retry-After header or JSON body."""
    header = response.headers.get("Retry-After")
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("retry_after") is not None:
        try:
            return float(body["retry_after"])
        except (TypeError, ValueError):
            return None
    return None


class DiscordRoleClient:
    """
    Synchronous client for Discord guild role mutations.

    SECURITY: Bot token must be stored securely and never logged.
    """

    def __init__(
        self,
        bot_token: str,
        guild_id: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the role client.

        Args:
            bot_token: Discord bot token
            guild_id: Guild (server) whose roles are managed
            base_url: API base URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        if not bot_token:
            raise ValueError("Discord bot token is required (DISCORD_BOT_TOKEN)")
        if not guild_id:
            raise ValueError("Discord guild id is required (DISCORD_GUILD_ID)")

        self.guild_id = guild_id
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS),
            headers={
                "Authorization": f"Bot {bot_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "DiscordRoleClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _request(
        self,
        method: str,
        endpoint: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Make an HTTP request to the Discord API.

        Raises:
            RoleRateLimitError: On 429
            RoleTransientError: On 5xx, timeouts and connection errors
            RoleValidationError: On any other 4xx
        """
        try:
            response = self._client.request(method, endpoint, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(
                "Discord API timeout",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            raise RoleTransientError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.warning(
                "Discord API connection error",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            raise RoleTransientError(f"Connection error: {e}")

        if response.status_code == 429:
            retry_after = _retry_after(response)
            logger.warning(
                "Discord API rate limited",
                extra={"endpoint": endpoint, "retry_after": retry_after},
            )
            raise RoleRateLimitError(retry_after=retry_after)

        if response.status_code >= 400:
            error_body = {}
            try:
                error_body = response.json()
            except ValueError:
                pass
            if not isinstance(error_body, dict):
                error_body = {"body": error_body}

            message = f"Discord API error: {response.status_code}"
            if response.status_code >= 500:
                logger.warning(
                    "Discord API server error",
                    extra={"status_code": response.status_code, "endpoint": endpoint},
                )
                raise RoleTransientError(
                    message,
                    status_code=response.status_code,
                    response=error_body,
                )

            logger.error(
                "Discord API rejected request",
                extra={
                    "status_code": response.status_code,
                    "endpoint": endpoint,
                    "response": str(error_body)[:500],
                },
            )
            raise RoleValidationError(
                message,
                status_code=response.status_code,
                code=str(error_body.get("code")) if error_body.get("code") is not None else None,
                response=error_body,
            )

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _role_path(self, member_external_id: str, role_id: str) -> str:
        return f"/guilds/{self.guild_id}/members/{member_external_id}/roles/{role_id}"

    def grant(self, member_external_id: str, role_id: str) -> None:
        """Add a role to a guild member. Idempotent on Discord's side."""
        self._request(
            "PUT",
            self._role_path(member_external_id, role_id),
            headers={"X-Audit-Log-Reason": AUDIT_LOG_REASON},
        )
        logger.info(
            "Discord role granted",
            extra={"member_external_id": member_external_id, "role_id": role_id},
        )

    def revoke(self, member_external_id: str, role_id: str) -> None:
        """Remove a role from a guild member. Idempotent on Discord's side."""
        self._request(
            "DELETE",
            self._role_path(member_external_id, role_id),
            headers={"X-Audit-Log-Reason": AUDIT_LOG_REASON},
        )
        logger.info(
            "Discord role revoked",
            extra={"member_external_id": member_external_id, "role_id": role_id},
        )

    def list_roles(self, member_external_id: str) -> List[str]:
        """Role ids currently held by a guild member."""
        data = self._request(
            "GET",
            f"/guilds/{self.guild_id}/members/{member_external_id}",
        )
        if not isinstance(data, dict):
            raise RoleClientError("Unexpected member payload from Discord API")
        return [str(role_id) for role_id in data.get("roles", [])]
