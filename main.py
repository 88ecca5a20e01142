import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request

from dal.conversation_dal import ConversationDAL
from dal.local_conversation_dal import LocalConversationDAL
from routes.conversation_route import router as conversation_router
from routes.realtime_ws import router as realtime_router
from services.realtime.session_registry import SessionRegistry
from services.realtime.transcript_store import TranscriptStore
from services.realtime.upstream_client import RealtimeUpstream
from utils.database_init import AsyncDatabaseInitializer
from utils.relay_config import RelaySettings

load_dotenv()  # Load environment variables from .env file if present

LOGGER = logging.getLogger(__name__)


def create_app(
    settings: Optional[RelaySettings] = None,
    upstream_factory: Optional[Callable[[], Any]] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application instance.

    `settings` and `upstream_factory` default to values built from the
    environment at startup; tests pass their own.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan manager to initialize:
          - the transcript database (created if missing, never wiped)
          - the transcript store with its local-file fallback
          - the session registry
          - the factory for upstream realtime engine connections
        and attach them to `app.state`.
        """
        relay_settings = settings or RelaySettings.from_env()
        logging.basicConfig(
            level=relay_settings.log_level.upper(),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )

        db_initializer = AsyncDatabaseInitializer(relay_settings.database_dir)
        await db_initializer.ensure_database()

        registry = SessionRegistry(
            debounce_seconds=relay_settings.save_debounce_seconds,
            eviction_delay=relay_settings.session_eviction_delay_seconds,
        )
        app.state.settings = relay_settings
        app.state.db_initializer = db_initializer
        app.state.transcript_store = TranscriptStore(
            ConversationDAL(db_initializer),
            LocalConversationDAL(relay_settings.fallback_dir, condition=relay_settings.condition),
            condition=relay_settings.condition,
            max_attempts=relay_settings.save_max_attempts,
            retry_delay=relay_settings.save_retry_delay_seconds,
        )
        app.state.session_registry = registry
        app.state.upstream_factory = upstream_factory or partial(
            RealtimeUpstream,
            relay_settings.openai_realtime_url,
            relay_settings.openai_api_key,
            connect_timeout=relay_settings.upstream_connect_timeout_seconds,
        )
        LOGGER.info("Transcripts stored in %s (fallback %s)", db_initializer.db_path, relay_settings.fallback_dir)

        try:
            yield
        finally:
            registry.shutdown()

    app = FastAPI(lifespan=lifespan)

    @app.get("/health")
    async def health(request: Request):
        """
        Simple health check that verifies the store and registry are in place.
        """
        has_store = getattr(request.app.state, "transcript_store", None) is not None
        has_registry = getattr(request.app.state, "session_registry", None) is not None
        return {"ok": True, "store_initialized": has_store, "registry_initialized": has_registry}

    # Register application routers
    app.include_router(realtime_router)
    app.include_router(conversation_router)

    return app


app = create_app()
