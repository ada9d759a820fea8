"""
FastAPI application wiring for the SSL tunnel.

Mounts the tunnel API and the ACME challenge route, and runs automatic
certificate renewal for the lifetime of the application.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .config import TunnelConfig, load_tunnel_config
from .lifecycle import get_lifecycle_manager
from .renewal import RenewalScheduler
from .routes import challenge_router, router


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    """Start the renewal scheduler on startup and stop it on shutdown."""
    config = app.state.config
    scheduler = RenewalScheduler(get_lifecycle_manager(config))
    app.state.renewal_scheduler = scheduler

    if config.is_configured():
        scheduler.start()
    else:
        logger.warning("[SSLTUNNEL] Tunnel settings incomplete, automatic renewal disabled")

    try:
        yield
    finally:
        await scheduler.stop()


def create_app(config: Optional[TunnelConfig] = None) -> FastAPI:
    """
    Build the SSL tunnel application.

    Args:
        config: Tunnel configuration (loaded from the config file if omitted)
    """
    app = FastAPI(title="SSL Tunnel", lifespan=_lifespan)
    app.state.config = config or load_tunnel_config()

    app.include_router(router)
    app.include_router(challenge_router)
    return app
