"""
FieldLog Backend: FastAPI Application Factory
===============================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   Called by uvicorn to start the server (uvicorn fieldlog.main:app).

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware:  Request ID → Logging → CORS                │
    │                                                          │
    │  Routes:                                                 │
    │  ┌──────────────────┐ ┌──────────────┐ ┌──────────────┐  │
    │  │ /api/observations│ │ /api/sync/*  │ │ GET /health  │  │
    │  └────────┬─────────┘ └──────┬───────┘ └──────────────┘  │
    │           ▼                  ▼                           │
    │   ObservationService   SyncOrchestrator                  │
    │           │                  │                           │
    │           ▼                  ▼                           │
    │    SqlVersionStore ◀── PeerReplicationEngine             │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Configure logging, validate configuration
    2. Build the database engine; create tables if DB_AUTO_CREATE
    3. Build store, replication engine and services (attach_services)
    Shutdown:
    1. Close the orchestrator (aborts running syncs, stops announcing)
    2. Dispose the database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fieldlog import __version__
from fieldlog.config import Settings, settings as default_settings
from fieldlog.database import (
    create_engine_from_settings,
    create_session_factory,
    create_tables,
    dispose_engine,
)
from fieldlog.exceptions import FieldLogError, StoreError
from fieldlog.middleware.logging import RequestLoggingMiddleware
from fieldlog.middleware.request_id import RequestIDMiddleware, request_id_var
from fieldlog.routes import health, observations, sync
from fieldlog.services.observation_service import ObservationService
from fieldlog.services.peer_sync import PeerReplicationEngine
from fieldlog.services.replication_base import ReplicationEngine
from fieldlog.services.sql_store import SqlVersionStore
from fieldlog.services.store_base import VersionStore
from fieldlog.services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s on stdout.
    Called once during startup, before anything else logs.
    """
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Third-party libraries that log every operation
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Service Wiring
# ══════════════════════════════════════════════════════════════════════════

def attach_services(app: FastAPI, store: VersionStore, engine: ReplicationEngine) -> None:
    """
    Build the services around `store` and `engine` and expose them to the
    route dependencies through `app.state`.
    """
    app.state.store = store
    app.state.replication_engine = engine
    app.state.observation_service = ObservationService(store)
    app.state.sync_orchestrator = SyncOrchestrator(engine)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup: logging, config validation, database, services.
    Shutdown: abort syncs, dispose database engine.

    If services were attached before startup (tests), they are used as is
    and their lifecycle is left to whoever attached them.
    """
    config: Settings = app.state.settings
    setup_logging(config.log_level)
    logger.info("=" * 60)
    logger.info("FieldLog Backend %s starting up (device %s)", __version__, config.device_id)

    try:
        config.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))
        raise

    if getattr(app.state, "observation_service", None) is not None:
        logger.info("Using pre-attached services")
        yield
        return

    db_engine = create_engine_from_settings(config)
    if config.db_auto_create:
        await create_tables(db_engine)
    store = SqlVersionStore(create_session_factory(db_engine))
    attach_services(app, store, PeerReplicationEngine.from_settings(store, config))

    logger.info("Server ready at http://%s:%d", config.backend_host, config.backend_port)
    logger.info("=" * 60)

    yield

    logger.info("FieldLog Backend shutting down...")
    await app.state.sync_orchestrator.close()
    await dispose_engine(db_engine)
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_body(exc: FieldLogError, rid: str, message: Optional[str] = None) -> dict:
    return {
        "error": exc.error_code,
        "message": message or exc.message,
        "details": exc.context,
        "request_id": rid,
    }


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map exception types to HTTP responses.

    Handler hierarchy:
        StoreError      → 500, generic message, details only in the log
        FieldLogError   → the exception's status_code and error_code
        Exception       → 500 (unexpected errors)
    """

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        rid = request_id_var.get("")
        logger.error("[%s] Store error: %s | Context: %s", rid, exc.message, exc.context)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": "A storage error occurred. Please try again later.",
                "request_id": rid,
            },
        )

    @app.exception_handler(FieldLogError)
    async def handle_fieldlog_error(request: Request, exc: FieldLogError):
        rid = request_id_var.get("")
        log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            log_level, "[%s] %s: %s", rid, type(exc).__name__, exc.message
        )
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc, rid))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        """Catch-all; the stack trace is logged, never returned."""
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred.",
                "request_id": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Configuration to use; the module default when omitted.
    """
    config = settings or default_settings

    app = FastAPI(
        title="FieldLog API",
        description=(
            "Offline-first field observation store with versioned edits, "
            "legacy schema migration and peer-to-peer sync."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = config

    # Middleware executes in reverse order of addition:
    # RequestID → Logging → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(observations.router)
    app.include_router(sync.router)
    app.include_router(health.router)

    return app


app = create_app()
