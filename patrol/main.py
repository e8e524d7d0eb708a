import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from patrol.db import engine as default_engine
from patrol.errors import ApiError, ConfigurationError, PersistenceError, error_response
from patrol.logging_utils import setup_json_logging
from patrol.routers import admin
from patrol.runtime import PatrolRuntime
from patrol.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from patrol.settings import get_settings

logger = logging.getLogger("patrol.request")
startup_logger = logging.getLogger("patrol.startup")


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


def create_app(
    runtime: PatrolRuntime,
    *,
    engine: Engine | None = None,
    run_schema_guard: bool = True,
    start_runtime: bool = True,
    configure_logging: bool = True,
) -> FastAPI:
    settings = get_settings()
    if configure_logging:
        setup_json_logging(app_name=settings.app_name)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.runtime = runtime
    app.state.schema_guard_result = _default_schema_guard_result()

    @app.middleware("http")
    async def request_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        request.state.actor = getattr(request.state, "actor", "system")
        request.state.actor_id = getattr(request.state, "actor_id", "system")

        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-Id"] = request_id
            return response
        finally:
            latency_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.info(
                "request_complete",
                extra={
                    "request_id": request_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": status_code,
                    "latency_ms": latency_ms,
                    "actor": getattr(request.state, "actor", "system"),
                    "actor_id": getattr(request.state, "actor_id", "system"),
                    "guild_id": request.path_params.get("guild_id") if request.path_params else None,
                },
            )

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
        )

    @app.exception_handler(ConfigurationError)
    async def handle_configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
        return error_response(
            request,
            status_code=422,
            code="CONFIGURATION_INVALID",
            message="Role tracking configuration rejected.",
            reasons=exc.reasons,
        )

    @app.exception_handler(LookupError)
    async def handle_lookup_error(request: Request, exc: LookupError) -> JSONResponse:
        return error_response(
            request,
            status_code=404,
            code="NOT_FOUND",
            message=str(exc) or "Not found.",
        )

    @app.exception_handler(PersistenceError)
    async def handle_persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
        return error_response(
            request,
            status_code=503,
            code="PERSISTENCE_FAILED",
            message=str(exc) or "Ledger write failed.",
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
        code_map = {
            401: "INVALID_TOKEN",
            403: "FORBIDDEN",
            404: "NOT_FOUND",
            409: "CONFLICT",
        }
        return error_response(
            request,
            status_code=exc.status_code,
            code=code_map.get(exc.status_code, "HTTP_ERROR"),
            message=str(exc.detail) if exc.detail else "Request failed.",
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            request,
            status_code=422,
            code="VALIDATION_ERROR",
            message=str(exc.errors()),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "unhandled_error",
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "path": request.url.path,
                "method": request.method,
            },
        )
        return error_response(
            request,
            status_code=500,
            code="INTERNAL_ERROR",
            message="Unexpected server error.",
        )

    app.include_router(admin.router)

    @app.on_event("startup")
    async def check_schema() -> None:
        if not run_schema_guard:
            return
        result = await asyncio.to_thread(verify_runtime_schema, engine or default_engine)
        app.state.schema_guard_result = result
        if result.ok:
            startup_logger.info("schema_guard_ok", extra=result.to_dict())
            return

        startup_logger.error("schema_guard_failed", extra=result.to_dict())
        if settings.schema_guard_strict:
            raise RuntimeError(f"Runtime schema guard failed: {'; '.join(result.issues)}")

    @app.on_event("startup")
    async def start_patrol_runtime() -> None:
        if start_runtime:
            await runtime.start()

    @app.get("/health")
    def health() -> dict[str, Any]:
        schema_guard_result: SchemaGuardResult = app.state.schema_guard_result
        return {
            "status": "ok",
            "schema_guard": schema_guard_result.to_dict(),
            "runtime_started": runtime.started,
            "open_sessions": len(runtime.sessions),
        }

    return app
