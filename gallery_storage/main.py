"""
Gallery storage service: provider connections, uploads, photo listings,
share links and background sync.

Load .env in development only (production uses env vars directly). Add CORS,
storage error handlers, a global exception handler, optional DB init and the
sync scheduler lifespan.
"""
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

# Load .env only in development, before config reads the environment
if os.getenv("ENV", "development").lower() == "development":
    load_dotenv(Path(__file__).resolve().parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gallery_storage.config import FRONTEND_URL, SKIP_DB_INIT, SYNC_ENABLED
from gallery_storage.connections import router as connections_router
from gallery_storage.database import Base, engine
from gallery_storage.deps import get_sync_engine
from gallery_storage.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    StorageError,
    TransientNetworkError,
    ValidationError,
)
from gallery_storage.scheduler import SyncScheduler
from gallery_storage.shares import router as shares_router
from gallery_storage.storage import router as storage_router

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# Create DB tables if not skipping (production uses Alembic migrations)
if not SKIP_DB_INIT:
    Base.metadata.create_all(bind=engine)

STATUS_BY_ERROR: list[tuple[type[StorageError], int]] = [
    (AuthenticationError, 401),
    (RateLimitedError, 503),
    (TransientNetworkError, 502),
    (NotFoundError, 404),
    (ValidationError, 400),
    (ConflictError, 409),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if SYNC_ENABLED:
        scheduler = SyncScheduler(get_sync_engine())
        scheduler.start()
    app.state.sync_scheduler = scheduler
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)


app = FastAPI(
    title="Gallery Storage",
    description="Cloud storage integration: Google Drive and Dropbox connections, uploads, sync and sharing.",
    lifespan=lifespan,
)

# CORS: explicit origin, allow credentials (cookies). Never use "*" with cookies.
app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL] if FRONTEND_URL else [],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    """Map the storage error taxonomy to HTTP; only user_message reaches the client."""
    status = next((code for cls, code in STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    content: dict = {"detail": exc.user_message, "error": type(exc).__name__}
    headers = {}
    if isinstance(exc, AuthenticationError) and exc.requires_password:
        content = {"detail": exc.msg, "requires_password": True}
    elif isinstance(exc, RateLimitedError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=status, content=content, headers=headers)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions; log and return generic 500. Never leak stack traces."""
    # Let FastAPI handle HTTPException (validation, auth, etc.)
    if isinstance(exc, HTTPException):
        raise exc
    logging.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(connections_router)
app.include_router(storage_router)
app.include_router(shares_router)
