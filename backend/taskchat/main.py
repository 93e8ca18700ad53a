"""Task Chat Relay application.

This is the main entry point for the task chat backend. Clients join
per-task chat rooms over a WebSocket, exchange messages with file
attachments, and get a replay of recent room history on join.

Modules:
    - chat: WebSocket rooms, presence, bounded in-memory history
    - files: Attachment validation, naming and storage
    - config: YAML settings with environment overrides
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from fastapi.staticfiles import StaticFiles

from taskchat.chat.manager import manager
from taskchat.chat.router import router as chat_router
from taskchat.config import get_config
from taskchat.files.router import router as files_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "uvicorn.access",
    "multipart",
    "multipart.multipart",
    "python_multipart",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def _evict_idle_rooms_periodically(interval: float) -> None:
    """Run the idle room eviction policy every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            manager.evict_idle_rooms()
        except Exception:
            logger.exception("Idle room eviction failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    if not manager.rooms.rooms():
        manager.configure(
            history_limit=config.rooms.history_limit,
            idle_eviction_seconds=config.rooms.idle_eviction_seconds,
        )

    eviction_task = None
    if config.rooms.idle_eviction_seconds is not None:
        logger.info(
            "Idle room eviction enabled: rooms empty for %ss are dropped (checked every %ss)",
            config.rooms.idle_eviction_seconds,
            config.rooms.eviction_interval_seconds,
        )
        eviction_task = asyncio.create_task(
            _evict_idle_rooms_periodically(config.rooms.eviction_interval_seconds)
        )
    else:
        logger.info("Idle room eviction disabled; empty rooms are kept")

    logger.info(
        "File uploads will be served from %s/%s (physical path: %s)",
        config.server.base_url,
        config.uploads.url_prefix,
        config.uploads.dir,
    )

    yield  # Application runs here

    # Shutdown
    if eviction_task is not None:
        eviction_task.cancel()
        try:
            await eviction_task
        except asyncio.CancelledError:
            pass
    logger.info("Application shutdown complete")


_config = get_config()

# The upload directory must exist before StaticFiles is mounted; failing
# here aborts startup.
Path(_config.uploads.dir).mkdir(parents=True, exist_ok=True)

# Create FastAPI application with metadata
app = FastAPI(
    title="Task Chat Relay",
    description="Real-time, room-scoped chat relay for task discussions",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_config.server.allowed_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(files_router)

# Serve uploaded files read-only
app.mount(
    f"/{_config.uploads.url_prefix}",
    StaticFiles(directory=_config.uploads.dir),
    name="uploads",
)


@app.get("/", response_class=PlainTextResponse)
async def root() -> str:
    """Banner with the public location of uploaded files."""
    return (
        "Task Chat Relay is running. File uploads at "
        f"{_config.server.base_url}/{_config.uploads.url_prefix}/your-file-name"
    )


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def run() -> None:
    """Serve the app with uvicorn using the configured host and port."""
    import uvicorn

    uvicorn.run(
        "taskchat.main:app",
        host=_config.server.host,
        port=_config.server.port,
        log_level=_config.logging.level.lower(),
    )


if __name__ == "__main__":
    run()
