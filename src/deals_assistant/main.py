"""FastAPI application for the deals assistant.

``create_app`` wires middleware, routers and exception handlers. The lifespan
builds the :class:`AppContext` (Redis, data store client, model gateway and
the services on top of them) unless one was placed on ``app.state`` already.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from deals_assistant.api.v1 import health
from deals_assistant.api.v1.router import router as v1_router
from deals_assistant.config import Settings, get_settings
from deals_assistant.context import build_app_context, connect_redis
from deals_assistant.dependencies import get_app_context
from deals_assistant.middleware import setup_middleware
from deals_assistant.utils.errors import OrchestratorException
from deals_assistant.utils.logging import get_logger, log_error, setup_logging

logger = get_logger("main")


def error_response(
    status_code: int,
    message: Any,
    code: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """JSON error envelope shared by every handler."""
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": message,
                "code": code,
                "status_code": status_code,
                "details": details or {},
            }
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    owns_context = app.state.context is None

    settings.validate_production_settings()
    settings.validate_llm_configuration()

    if owns_context:
        redis_client = await connect_redis(settings)
        app.state.context = build_app_context(settings, redis_client=redis_client)

    logger.info(
        f"Deals assistant ready: environment={settings.environment.value}, "
        f"ai_available={settings.ai_available}, "
        f"cache_backend={app.state.context.cache.backend}"
    )
    try:
        yield
    finally:
        if owns_context and app.state.context is not None:
            await app.state.context.aclose()
            app.state.context = None
        logger.info("Deals assistant stopped")


def _request_info(request: Request, **extra: Any) -> Dict[str, Any]:
    return {"method": request.method, "path": request.url.path, **extra}


def _register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(OrchestratorException)
    async def orchestrator_exception_handler(
        request: Request, exc: OrchestratorException
    ) -> JSONResponse:
        log_error(exc, context=_request_info(request, code=exc.code, status_code=exc.status_code))
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        if exc.status_code < 500:
            logger.warning(f"{exc.status_code} {request.method} {request.url.path}: {exc.detail}")
        else:
            log_error(exc, context=_request_info(request, status_code=exc.status_code))
        return error_response(exc.status_code, exc.detail, "HTTP_ERROR")

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """422 listing each invalid field as ``body.message``-style dotted paths."""
        errors = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ())),
                "message": error.get("msg"),
                "type": error.get("type"),
            }
            for error in exc.errors()
        ]
        logger.warning(
            f"Rejected {request.method} {request.url.path}: "
            + "; ".join(f"{e['field']} {e['message']}" for e in errors)
        )
        return error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation failed",
            "VALIDATION_ERROR",
            {"validation_errors": errors},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log_error(exc, context=_request_info(request, unhandled=True))
        if settings.is_production:
            return error_response(500, "An internal server error occurred", "INTERNAL_SERVER_ERROR")
        return error_response(
            500,
            str(exc),
            "INTERNAL_SERVER_ERROR",
            {"exception_type": type(exc).__name__},
        )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application; interactive docs only when DEBUG is on."""
    settings = settings or get_settings()
    setup_logging(settings)

    docs = settings.debug
    app = FastAPI(
        title="Deals Assistant",
        description=(
            "Shopping assistant for the deals marketplace: intent routing, "
            "deal and coupon lookups, streamed answers."
        ),
        version="0.1.0",
        docs_url="/docs" if docs else None,
        redoc_url="/redoc" if docs else None,
        openapi_url="/openapi.json" if docs else None,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.context = None

    setup_middleware(app, settings)
    app.include_router(v1_router)

    # Container probes at the root, same handlers as /api/v1/health and /api/v1/ready
    @app.get("/health", include_in_schema=False)
    async def root_health_check(request: Request):
        return await health.health_check(context=get_app_context(request))

    @app.get("/ready", include_in_schema=False)
    async def root_readiness_check(request: Request):
        return await health.readiness_check(context=get_app_context(request))

    _register_exception_handlers(app, settings)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    server = get_settings().server
    uvicorn.run("deals_assistant.main:app", host=server.host, port=server.port, reload=server.reload)
