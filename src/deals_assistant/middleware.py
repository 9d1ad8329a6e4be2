"""HTTP middleware: request ids, access logging, unhandled error logging and CORS."""

import re
import time
import uuid
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from deals_assistant.config import Settings
from deals_assistant.utils.logging import get_logger, log_error, log_request, set_request_id

logger = get_logger("middleware")

REQUEST_ID_HEADER = "X-Request-ID"

# Client ids end up in logs and chat turn records.
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")

# Probes hit these every few seconds; logged at DEBUG only.
QUIET_PATHS = frozenset({"/health", "/ready", "/api/v1/health", "/api/v1/ai/health"})


def resolve_request_id(header_value: Optional[str]) -> str:
    """Reuse the caller's request id when it is well formed, else mint one."""
    if header_value and _REQUEST_ID_PATTERN.match(header_value):
        return header_value
    return uuid.uuid4().hex


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Bind a request id to the logging context and echo it on the response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        set_request_id(request_id)
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class TimingMiddleware(BaseHTTPMiddleware):
    """Access log with duration.

    For streamed responses this measures time to the first byte, not the
    length of the stream.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - started) * 1000

        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"
        if request.url.path in QUIET_PATHS and response.status_code < 400:
            logger.debug(f"{request.method} {request.url.path} -> {response.status_code}")
            return response

        log_request(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
            client_ip=_client_ip(request),
            streaming=response.headers.get("content-type", "").startswith("text/event-stream"),
        )
        return response


class ErrorLoggingMiddleware(BaseHTTPMiddleware):
    """Log exceptions that escaped every handler, then re-raise."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            log_error(
                e,
                context={
                    "method": request.method,
                    "path": request.url.path,
                    "query": str(request.url.query) or None,
                    "client_ip": _client_ip(request),
                },
            )
            raise


def setup_cors_middleware(app: FastAPI, settings: Settings) -> None:
    cors = settings.cors
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors.origins,
        allow_credentials=cors.allow_credentials,
        allow_methods=cors.allow_methods,
        allow_headers=cors.allow_headers,
        expose_headers=[REQUEST_ID_HEADER, "X-Process-Time"],
        max_age=cors.max_age,
    )
    logger.info(f"CORS allowed origins: {', '.join(cors.origins) or 'none'}")


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register middleware.

    The last one added runs outermost: CORS answers preflights first, then the
    request id is bound so the timing and error layers log under it.
    """
    app.add_middleware(ErrorLoggingMiddleware)
    app.add_middleware(TimingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    setup_cors_middleware(app, settings)
