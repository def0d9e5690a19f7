"""CORS and per-request audit logging middleware."""

import uuid
import time
import logging

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from cleandoc_export.core.config import settings

logger = logging.getLogger("cleandoc_export")


class ExportRequestLogMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log who touched which tenant's exports.

    ``tenant_id`` / ``actor_id`` are filled in on ``request.state`` by the role
    dependencies; anonymous requests (health, docs) log ``-``.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.monotonic()

        response: Response = await call_next(request)

        duration = round((time.monotonic() - start_time) * 1000, 2)
        response.headers["X-Request-Id"] = request_id
        response.headers["X-Response-Time-Ms"] = str(duration)

        tenant_id = getattr(request.state, "tenant_id", None) or "-"
        actor_id = getattr(request.state, "actor_id", None) or "-"
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "%s %s %s %sms tenant=%s actor=%s request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration,
            tenant_id,
            actor_id,
            request_id,
        )
        return response


def setup_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )
    app.add_middleware(ExportRequestLogMiddleware)
