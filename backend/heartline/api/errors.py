"""JSON error handlers for the HTTP surface.

Every error body carries the request id bound by the observability middleware.
Backing-store outages surface as 503 so load balancers can route around the
instance.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.exceptions import HTTPException as StarletteHTTPException

from heartline.infra.postgres import PoolUnavailable
from heartline.obs import logging as obs_logging

logger = logging.getLogger(__name__)


def get_request_id(default: str = "unknown") -> str:
    return obs_logging.current_request_id() or default


def _error_body(detail: str, **extra) -> dict:
    return {"detail": detail, **extra, "request_id": get_request_id()}


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.detail),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        return JSONResponse(
            status_code=422,
            content=_error_body("validation_error", errors=jsonable_encoder(exc.errors())),
        )

    @app.exception_handler(RedisError)
    async def redis_exc_handler(request: Request, exc: RedisError):  # type: ignore[override]
        logger.warning("Redis unavailable while serving %s", request.url.path, exc_info=True)
        return JSONResponse(status_code=503, content=_error_body("redis_unavailable"))

    @app.exception_handler(PoolUnavailable)
    async def postgres_exc_handler(request: Request, exc: PoolUnavailable):  # type: ignore[override]
        logger.warning("Postgres unavailable while serving %s", request.url.path)
        return JSONResponse(status_code=503, content=_error_body("postgres_unavailable"))
