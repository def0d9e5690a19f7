"""FastAPI main application entry point."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from cleandoc_export.core.config import settings
from cleandoc_export.core.middleware import setup_middleware
from cleandoc_export.core.rate_limiter import limiter
from cleandoc_export.core.exceptions import (
    CleanDocExportError, ResourceNotFoundError, ResourceConflictError, ValidationError,
)
from cleandoc_export.db.session import SessionLocal
from cleandoc_export.models.export_record import ExportStatus
from cleandoc_export.services.cache_service import cache_service
from cleandoc_export.services.storage_service import storage_service

from cleandoc_export.api.exports import router as exports_router
from cleandoc_export.api.audit import router as audit_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("cleandoc_export")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("🚀 Starting CleaniDoc Export API")
    try:
        storage_service.ensure_bucket()
        logger.info("✅ MinIO bucket '%s' ready", settings.MINIO_BUCKET)
    except Exception as e:
        logger.warning(f"⚠️  MinIO not available: {e}")

    if cache_service.health_check():
        logger.info("✅ Redis connected")
    else:
        logger.warning("⚠️  Redis not available, export status will not be published")

    yield

    logger.info("🔻 Shutting down CleaniDoc Export API")


app = FastAPI(
    title="CleaniDoc Export API",
    description="Daily HACCP export, delivery and audit pipeline",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Middleware
setup_middleware(app)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


def _error_response(status_code: int, exc: CleanDocExportError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error_code": exc.error_code},
    )


@app.exception_handler(ResourceNotFoundError)
async def not_found_handler(request: Request, exc: ResourceNotFoundError):
    return _error_response(404, exc)


@app.exception_handler(ResourceConflictError)
async def conflict_handler(request: Request, exc: ResourceConflictError):
    return _error_response(409, exc)


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return _error_response(400, exc)


@app.exception_handler(CleanDocExportError)
async def export_error_handler(request: Request, exc: CleanDocExportError):
    logger.error("❌ %s: %s", exc.error_code, exc.message)
    return _error_response(500, exc)


# Register routers
app.include_router(exports_router, prefix="/api")
app.include_router(audit_router, prefix="/api")


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/api/health")
def health():
    """Database, storage and cache reachability."""
    db_ok = True
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"⚠️  Database health check failed: {e}")
        db_ok = False
    finally:
        db.close()

    components = {
        "database": db_ok,
        "storage": storage_service.health_check(),
        "cache": cache_service.health_check(),
    }
    # Redis is optional; exports still run without status publishing
    status = "ok" if components["database"] and components["storage"] else "degraded"
    return {"status": status, "components": components}


FINAL_STATUSES = {ExportStatus.COMPLETED.value, ExportStatus.FAILED.value}


@app.websocket("/ws/exports/{export_id}")
async def websocket_export(websocket: WebSocket, export_id: str):
    """Stream status events for one export until it finishes or the client goes away."""
    await websocket.accept()
    # Subscribe before reading the cached status so no event falls in between
    pubsub = cache_service.subscribe_export(export_id)
    receiver = asyncio.ensure_future(websocket.receive_text())
    try:
        last = cache_service.get_export_status(export_id)
        if last:
            await websocket.send_json(last)
            if last.get("status") in FINAL_STATUSES:
                return
        if pubsub is None:
            return

        while True:
            if receiver.done():
                if receiver.exception() is not None:
                    return
                # Client chatter is ignored; keep listening for a disconnect
                receiver = asyncio.ensure_future(websocket.receive_text())
            message = await asyncio.to_thread(pubsub.get_message, timeout=1.0)
            if not message or message.get("type") != "message":
                continue
            event = json.loads(message["data"])
            await websocket.send_json(event)
            if event.get("status") in FINAL_STATUSES:
                return
    except WebSocketDisconnect:
        pass
    finally:
        receiver.cancel()
        if pubsub is not None:
            pubsub.close()
        try:
            await websocket.close()
        except RuntimeError:
            # Already closed by the client
            pass
