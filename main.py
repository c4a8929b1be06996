"""
membersync API.

Thin HTTP boundary around the reconciliation engine: the Stripe webhook
endpoint, the member list read surface and a health check.

Run as: uvicorn main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from membersync.api.routes import health, lists, webhooks_stripe
from membersync.app_state import Components, build_components
from membersync.config.settings import load_config

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(components: Optional[Components] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        components: Pre-built components (tests); built from the
            environment at startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting membersync API")
        owned = components is None
        app.state.components = components or build_components(load_config())

        yield

        # Shutdown
        logger.info("Shutting down membersync API")
        if owned:
            app.state.components.close()

    app = FastAPI(
        title="membersync API",
        description="Billing, tier and role membership reconciliation",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Include health route (bypasses authentication)
    app.include_router(health.router)

    app.include_router(webhooks_stripe.router)
    app.include_router(lists.router)

    return app


app = create_app()
