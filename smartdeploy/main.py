"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from smartdeploy import __version__
from smartdeploy.api.middleware import RequestLoggingMiddleware
from smartdeploy.api.v1.deployments import running_attempts
from smartdeploy.api.v1.router import router as v1_router
from smartdeploy.config import settings
from smartdeploy.core.exceptions import (
    ConfigurationError,
    ConflictError,
    DeploymentNotFoundError,
    SmartDeployError,
)
from smartdeploy.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

# Most specific first; anything else derived from SmartDeployError is a 500
ERROR_STATUS: list[tuple[type[SmartDeployError], int]] = [
    (DeploymentNotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ConfigurationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
]


def error_body(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"error": {"code": code, "message": message, "details": details or {}}}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging()
    logger.info(
        "application.starting",
        version=__version__,
        environment=settings.app_env,
        region=settings.aws_region,
        shared_alb=settings.shared_alb_enabled,
        dns=settings.dns_enabled,
    )

    yield

    pending = running_attempts()
    if pending:
        logger.warning("application.shutdown.attempts_interrupted", count=pending)
    logger.info("application.shutdown")


def register_error_handlers(app: FastAPI) -> None:
    """Translate domain errors into JSON responses."""

    @app.exception_handler(SmartDeployError)
    async def smartdeploy_error_handler(request: Request, exc: SmartDeployError) -> JSONResponse:
        status_code = next(
            (code for kind, code in ERROR_STATUS if isinstance(exc, kind)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        if status_code >= 500:
            logger.error("request.domain_error", path=request.url.path, error=exc.message)
        return JSONResponse(
            status_code=status_code,
            content=error_body(type(exc).__name__.upper(), exc.message, exc.details),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("request.unhandled_exception", path=request.url.path, exc_info=exc)
        message = str(exc) if settings.is_development else "An unexpected error occurred"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("INTERNAL_ERROR", message, {"type": type(exc).__name__}),
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="SmartDeploy API",
        description="Selects a hosting target for a repository and rolls it out to AWS",
        version=__version__,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    register_error_handlers(app)
    app.include_router(v1_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "smartdeploy.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )
