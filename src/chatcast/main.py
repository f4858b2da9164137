"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown of the broadcast service
(dispatcher workers, idle reaper) and the optional Redis relay.

The service lives on ``app.state.broadcast``. Passing one in lets tests
drive the same instance the routes use.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatcast import __version__
from chatcast.api import api_router
from chatcast.config import Settings
from chatcast.config import settings as default_settings
from chatcast.logconfig import configure_logging
from chatcast.service import BroadcastService

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs
    at shutdown.
    """
    config: Settings = app.state.config
    logger.info(
        "chatcast.starting",
        version=__version__,
        environment=config.environment,
        port=config.port,
    )

    service: BroadcastService = app.state.broadcast
    await service.start()

    if config.relay_enabled:
        from chatcast.realtime.relay import RedisRelay

        relay = RedisRelay(
            service.gateway,
            redis_url=config.redis_url,
            prefix=config.relay_channel_prefix,
            retry_delay=config.relay_retry_seconds,
        )
        app.state.relay = relay
        try:
            await relay.start()
            logger.info("chatcast.relay_connected", url=config.redis_url)
        except Exception as e:
            logger.warning("chatcast.relay_unavailable", error=str(e))
            # Relay is optional; in-process and HTTP publishing still work

    yield

    logger.info("chatcast.shutdown")

    relay = getattr(app.state, "relay", None)
    if relay is not None:
        await relay.stop()
        app.state.relay = None

    await service.stop()


def create_app(
    config: Optional[Settings] = None,
    service: Optional[BroadcastService] = None,
) -> FastAPI:
    """Build and return the FastAPI application."""
    config = config or (service.config if service is not None else default_settings)
    configure_logging(config.log_level, json_logs=config.log_json)

    app = FastAPI(
        title="chatcast",
        description="Real-time fan-out of chat messages to WebSocket subscribers",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.broadcast = service or BroadcastService(config)
    app.state.relay = None

    # ── Middleware stack ──────────────────────────────────────
    from chatcast.middleware.request_id import RequestIdMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount API routes
    app.include_router(api_router)

    # Mount WebSocket route
    from chatcast.realtime.websocket import router as ws_router

    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: chatcast.main:app)
app = create_app()
