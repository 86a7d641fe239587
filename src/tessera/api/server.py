"""FastAPI server for the Tessera task API."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException as FastAPIHTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tessera.api.routes import health, tasks
from tessera.errors import (
    DelegationCycle,
    DelegationDepthExceeded,
    EngineSaturated,
    InvalidInput,
    SignatureInvalid,
    TaskNotFinished,
    TaskNotFound,
    TesseraError,
)
from tessera.runtime import AgentRuntime
from tessera.settings import get_engine_settings

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[TesseraError], int] = {
    InvalidInput: 400,
    SignatureInvalid: 401,
    TaskNotFound: 404,
    TaskNotFinished: 409,
    DelegationCycle: 409,
    DelegationDepthExceeded: 409,
    EngineSaturated: 503,
}


def _status_for(exc: TesseraError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(runtime: Optional[AgentRuntime] = None) -> FastAPI:
    """Build the API around ``runtime`` (defaults to one built from settings)."""
    settings = get_engine_settings()

    app = FastAPI(
        title="Tessera API",
        description="HTTP API for submitting and tracking agent tasks",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url=f"{settings.API_PREFIX}/openapi.json",
    )
    app.state.runtime = runtime if runtime is not None else AgentRuntime.from_settings()
    app.state.background_tasks = set()

    @app.exception_handler(TesseraError)
    async def tessera_exception_handler(request: Request, exc: TesseraError) -> JSONResponse:
        """Render runtime errors as {"code": kind, "message": detail}."""
        status_code = _status_for(exc)
        headers = {"Retry-After": "1"} if isinstance(exc, EngineSaturated) else None
        if status_code >= 500:
            logger.error("Request to %s failed: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"code": exc.kind, "message": exc.detail},
            headers=headers,
        )

    @app.exception_handler(FastAPIHTTPException)
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: FastAPIHTTPException | StarletteHTTPException
    ) -> JSONResponse:
        if isinstance(exc.detail, dict) and "code" in exc.detail and "message" in exc.detail:
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.detail,
                headers=getattr(exc, "headers", None),
            )

        code_map = {
            400: InvalidInput.kind,
            404: "NotFound",
            405: "MethodNotAllowed",
            409: "Conflict",
            500: "Internal",
        }
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": code_map.get(exc.status_code, "Internal"),
                "message": str(exc.detail),
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Report request validation errors as 400 InvalidInput."""
        errors = exc.errors()
        first_error = errors[0] if errors else {}
        field = " -> ".join(str(loc) for loc in first_error.get("loc", []))
        error_msg = first_error.get("msg", "Validation error")
        message = f"Validation error: {field}: {error_msg}" if field else error_msg
        return JSONResponse(
            status_code=400,
            content={"code": InvalidInput.kind, "message": message},
        )

    app.include_router(tasks.router, prefix=settings.API_PREFIX)
    app.include_router(health.router, prefix=settings.API_PREFIX)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tessera.api.server:create_app", factory=True, host="127.0.0.1", port=8000)
