"""Messenger Backend Application.

This is the main entry point for the messenger backend service: the
real-time messaging core of the social network (presence, conversation rooms,
message/reaction/deletion fan-out) plus the REST endpoints that hydrate
clients before they go real-time.

Modules:
    - chat: WebSocket channel, presence registry, conversation rooms, fan-out
    - conversations: REST history, metadata and membership endpoints
    - store: DuckDB persistence for users, conversations and messages
    - auth: signed session token verification
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from messenger.chat.fanout import FanoutEngine, set_fanout
from messenger.chat.manager import ConnectionManager, get_manager, set_manager
from messenger.chat.router import router as chat_router
from messenger.config import get_config
from messenger.conversations.router import router as conversations_router
from messenger.errors import MessengerError
from messenger.store import MessagingStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in messenger.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = MessagingStore.get_instance(db_path=config.store.db_path)

    manager = ConnectionManager(store)
    set_manager(manager)
    set_fanout(FanoutEngine(manager, store, report_errors=config.realtime.report_errors))
    logger.info(
        "Real-time hub ready (report_errors=%s)",
        config.realtime.report_errors,
    )

    yield  # Application runs here

    # Shutdown
    await manager.shutdown()
    set_fanout(None)
    set_manager(None)
    MessagingStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Messenger API",
    description="Real-time messaging and presence for the social network",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(conversations_router)


@app.exception_handler(MessengerError)
async def messenger_error_handler(request: Request, exc: MessengerError) -> JSONResponse:
    """Turn domain errors into ``{"error": ...}`` responses."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with the number of live WebSocket connections.
    """
    manager = get_manager()
    return {
        "status": "ok",
        "connections": manager.connection_count() if manager else 0,
    }
