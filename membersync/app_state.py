"""
Process-wide component wiring.

Everything is built once at startup from a ReconcilerConfig and passed by
reference; nothing is recreated per request. Collaborators can be injected
(tests pass fakes) and otherwise come from configuration.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from membersync.config.settings import ConfigError, ReconcilerConfig
from membersync.database.session import Database
from membersync.integrations.discord.client import DiscordRoleClient
from membersync.integrations.stripe.billing_client import StripeBillingClient
from membersync.integrations.stripe.signature import StripeSignatureVerifier
from membersync.jobs.daily_sweep import DailySweep
from membersync.models.base import utcnow
from membersync.repositories.subscription_store import SubscriptionStore
from membersync.services.audit_trail import AuditTrail
from membersync.services.event_dispatcher import EventDispatcher
from membersync.services.idempotency_ledger import IdempotencyLedger
from membersync.services.member_lists import MemberListing
from membersync.services.reminders import RoleBotNotifier
from membersync.services.role_sync import RoleSyncAdapter
from membersync.services.webhook_ingestion import WebhookIngestionGate

logger = logging.getLogger(__name__)


@dataclass
class Components:
    config: ReconcilerConfig
    database: Database
    audit: AuditTrail
    ledger: IdempotencyLedger
    store: SubscriptionStore
    role_client: object
    role_sync: RoleSyncAdapter
    billing_client: Optional[object]
    notifier: Optional[object]
    dispatcher: EventDispatcher
    gate: WebhookIngestionGate
    sweep: DailySweep
    listing: MemberListing
    verifier: Optional[StripeSignatureVerifier] = None

    def close(self) -> None:
        """Release HTTP clients and the connection pool."""
        for client in (self.role_client, self.notifier):
            close = getattr(client, "close", None)
            if callable(close):
                close()
        self.database.dispose()


def build_components(
    config: ReconcilerConfig,
    database: Optional[Database] = None,
    role_client=None,
    billing_client=None,
    notifier=None,
    verifier: Optional[StripeSignatureVerifier] = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], None] = time.sleep,
    create_tables: bool = True,
) -> Components:
    """
    Build the component graph.

    Raises:
        ConfigError: If no role client is injected and Discord is not configured
    """
    database = database or Database(config.database_url)
    if create_tables:
        database.create_all()

    if role_client is None:
        if not config.discord_bot_token:
            raise ConfigError("discord_bot_token is required (DISCORD_BOT_TOKEN)")
        role_client = DiscordRoleClient(
            bot_token=config.discord_bot_token,
            guild_id=config.guild_id,
            base_url=config.discord_api_base,
        )

    if billing_client is None and config.stripe_api_key:
        billing_client = StripeBillingClient(config.stripe_api_key)
    if verifier is None and config.stripe_webhook_secret:
        verifier = StripeSignatureVerifier(config.stripe_webhook_secret)
    if notifier is None and config.rolebot_webhook_url:
        notifier = RoleBotNotifier(config.rolebot_webhook_url)

    audit = AuditTrail(database)
    ledger = IdempotencyLedger(database)
    store = SubscriptionStore(database)
    role_sync = RoleSyncAdapter(
        database,
        role_client,
        audit,
        max_attempts=config.role_sync_max_attempts,
        base_delay_seconds=config.role_sync_base_delay_seconds,
        max_delay_seconds=config.role_sync_max_delay_seconds,
        sleep=sleep,
    )
    dispatcher = EventDispatcher(
        database,
        store,
        role_sync,
        audit,
        billing_client,
        config,
        notifier=notifier,
        clock=clock,
    )
    gate = WebhookIngestionGate(database, ledger, dispatcher, audit)
    sweep = DailySweep(database, store, role_sync, audit, config, notifier=notifier)

    logger.info(
        "Components built",
        extra={
            "billing_client": billing_client is not None,
            "signature_verifier": verifier is not None,
            "notifier": notifier is not None,
        },
    )

    return Components(
        config=config,
        database=database,
        audit=audit,
        ledger=ledger,
        store=store,
        role_client=role_client,
        role_sync=role_sync,
        billing_client=billing_client,
        notifier=notifier,
        dispatcher=dispatcher,
        gate=gate,
        sweep=sweep,
        listing=MemberListing(database),
        verifier=verifier,
    )
