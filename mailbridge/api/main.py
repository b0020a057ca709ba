"""
FastAPI Backend for MailBridge

One mailbox API over Gmail and IMAP/SMTP accounts, with a local message
cache, combined fuzzy/semantic search and AI summaries.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import asyncio
import logging
import re
import uuid

from mailbridge import __version__
from mailbridge.api import dependencies
from mailbridge.api.routes import accounts, emails, search, snoozes
from mailbridge.core.config import get_settings
from mailbridge.core.database import connection
from mailbridge.core.errors import (
    AuthExpired,
    ConfigurationError,
    MailBridgeError,
    NotFound,
    ProviderUnavailable,
    RemoteBackendError,
    ValidationError,
)
from mailbridge.core.logging_config import configure_logging

settings = get_settings()
logger = logging.getLogger(__name__)
error_logger = logging.getLogger("api.errors")

# Most specific first: ProviderUnavailable is a RemoteBackendError
ERROR_STATUS = (
    (AuthExpired, 401),
    (ConfigurationError, 409),
    (NotFound, 404),
    (ValidationError, 400),
    (ProviderUnavailable, 503),
    (RemoteBackendError, 502),
)

app = FastAPI(
    title="MailBridge API",
    description="Unified mailbox API over Gmail and IMAP/SMTP with cached search",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

_indexer_task = None
_snooze_task = None


def _sanitize_error_message(message: str) -> str:
    """Scrub credentials from exception messages before logging."""
    sanitized = re.sub(
        r'(postgresql|postgres|sqlite)://[^:]+:[^@]+@',
        r'\1://[USER]:[REDACTED]@',
        message,
        flags=re.IGNORECASE
    )
    sensitive_patterns = [
        (r'(IMAP_PASSWORD|SMTP_PASSWORD|DB_ENCRYPTION_KEY|API_KEY|OPENAI_API_KEY|GOOGLE_CLIENT_SECRET)[=:\s]+[^\s,;]+',
         r'\1=[REDACTED]'),
        (r'(password|passwd|secret|token|key)["\']?\s*[=:]\s*["\']?[^"\'\s,;]+', r'\1=[REDACTED]'),
    ]
    for pattern, replacement in sensitive_patterns:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)

    # Fernet keys (base64, 44 chars)
    sanitized = re.sub(r'[A-Za-z0-9_-]{43}=', '[REDACTED_KEY]', sanitized)
    # OAuth access tokens
    sanitized = re.sub(r'ya29\.[A-Za-z0-9_.-]+', '[REDACTED_TOKEN]', sanitized)
    return sanitized


def status_for(exc: MailBridgeError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(MailBridgeError)
async def mailbridge_exception_handler(request: Request, exc: MailBridgeError):
    """Map the error taxonomy to HTTP statuses with {detail, code}."""
    status_code = status_for(exc)
    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, ConfigurationError) and exc.missing:
        content["missing"] = exc.missing
    if isinstance(exc, (AuthExpired, RemoteBackendError)) and exc.backend:
        content["backend"] = exc.backend

    log = logger.warning if status_code < 500 else logger.error
    log(f"{request.method} {request.url.path} -> {status_code} {exc.code}: {_sanitize_error_message(exc.message)}")
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Log unexpected errors with an error id and return a generic message.
    """
    error_id = str(uuid.uuid4())
    sanitized_message = _sanitize_error_message(str(exc))

    error_logger.error(
        f"Error {error_id}: {type(exc).__name__}: {sanitized_message}",
        exc_info=True,
        extra={
            "error_id": error_id,
            "path": request.url.path,
            "method": request.method,
            "client": request.client.host if request.client else None
        }
    )

    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred",
            "error_id": error_id,
            "message": "The error has been logged. If you need assistance, reference this error ID."
        }
    )


@app.on_event("startup")
async def startup_event():
    """Initialize logging, database, services and the background tasks."""
    global _indexer_task, _snooze_task
    configure_logging(settings)

    try:
        connection.init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        return

    services = dependencies.build_services(connection.get_session_factory(), settings)
    dependencies.set_services(services)

    if await services.search.check_embedder():
        logger.info("Semantic search enabled")
        if services.indexer and settings.embedding_indexer_enabled:
            _indexer_task = asyncio.create_task(services.indexer.run_forever())
    else:
        logger.info("Semantic search disabled, using edit-distance and trigram passes only")

    if settings.snooze_scheduler_enabled:
        _snooze_task = asyncio.create_task(services.snoozes.run_forever())


async def _stop_task(task, name: str):
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    logger.info(f"{name} stopped")


@app.on_event("shutdown")
async def shutdown_event():
    global _indexer_task, _snooze_task
    if _indexer_task is not None:
        await _stop_task(_indexer_task, "Embedding indexer")
        _indexer_task = None
    if _snooze_task is not None:
        await _stop_task(_snooze_task, "Snooze scheduler")
        _snooze_task = None


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key", "Authorization"],
    max_age=3600,
)

app.include_router(accounts.router)
app.include_router(emails.router)
app.include_router(search.router)
app.include_router(snoozes.router)


@app.get("/health")
async def health_check():
    """Health check endpoint (no auth required)"""
    from sqlalchemy import text

    health = {
        "status": "healthy",
        "version": __version__,
        "database": "unknown",
        "checks": {}
    }

    try:
        factory = connection.get_session_factory()
        with connection.session_scope(factory) as db:
            db.execute(text("SELECT 1"))
        health["database"] = "connected"
        health["checks"]["database"] = "ok"
    except Exception as e:
        health["database"] = "disconnected"
        health["checks"]["database"] = f"error: {_sanitize_error_message(str(e))}"
        health["status"] = "degraded"

    return health


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.api_port)
