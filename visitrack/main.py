from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging
import structlog
import time

from visitrack.core.config import Settings, settings as default_settings
from visitrack.core.database import Database
from visitrack.core.errors import AppError
from visitrack.api import analytics, events, sessions
from visitrack.schemas.common import ErrorBody, ErrorResponse


def configure_logging(log_level: str):
    """Configure structured logging"""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        )
    )


logger = structlog.get_logger()


def error_response(status_code: int, code: str, message: str, details=None) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


def create_app(app_settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    app_settings = app_settings or default_settings
    configure_logging(app_settings.log_level)
    database = database or Database(app_settings.database_url, echo=app_settings.debug)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle events"""
        logger.info("application_startup", app_name=app_settings.app_name)
        if app_settings.create_tables:
            await database.create_all()
        yield
        await database.dispose()
        logger.info("application_shutdown")

    app = FastAPI(
        title=app_settings.app_name,
        debug=app_settings.debug,
        lifespan=lifespan
    )
    app.state.settings = app_settings
    app.state.database = database

    # Middleware for logging requests
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )

        return response

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        else:
            logger.warning("request_rejected", path=request.url.path, code=exc.code, error=exc.message)
        return error_response(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        logger.warning("request_validation_failed", path=request.url.path, errors=len(details))
        return error_response(status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", "Invalid request", details)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path, error=str(exc))
        message = str(exc) if app_settings.debug else "Internal server error"
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR", message)

    # Include routers
    app.include_router(events.router, prefix=app_settings.api_prefix)
    app.include_router(sessions.router, prefix=app_settings.api_prefix)
    app.include_router(analytics.router, prefix=app_settings.api_prefix)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "app": app_settings.app_name}

    return app


app = create_app()
