"""
API routes.
"""

from membersync.api.routes import health, lists, webhooks_stripe

__all__ = ["health", "lists", "webhooks_stripe"]
