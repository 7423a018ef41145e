"""
SCANAGENTS API application.

Wires the agent and strategy routers under ``/api/v1``, renders domain
errors as ``{code, message, details}`` and, unless disabled, runs the
agent scheduler inside the API process.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import Response

from ..core.config import get_settings
from ..core.errors import AppError, ErrorCode, internal_error
from ..core.logging_config import configure_logging
from ..db.database import close_db, init_db
from ..workers.scheduler import get_agent_scheduler
from .routes import agents, strategies

configure_logging(get_settings(), os.environ.get("LOG_LEVEL"))
logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables in development, then start and stop the scheduler"""
    settings = get_settings()
    logger.info(f"{settings.app_name} v{settings.app_version} starting ({settings.environment})")

    # Deployments run Alembic migrations instead
    if settings.is_debug:
        try:
            await init_db()
            logger.info("Database: tables ready")
        except Exception as e:
            logger.error(f"Database: initialization failed - {e}")

    scheduler = None
    if settings.scheduler_enabled:
        try:
            scheduler = get_agent_scheduler()
            await scheduler.start()
        except Exception as e:
            logger.error(f"Agent Scheduler: Failed to start - {e}")
    else:
        logger.info("Agent Scheduler: disabled in this process")

    yield

    if scheduler is not None:
        try:
            await scheduler.stop()
        except Exception as e:
            logger.error(f"Agent Scheduler: Error stopping - {e}")
    await close_db()
    logger.info(f"{settings.app_name} stopped")


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render domain errors as {code, message, details}"""
    if exc.status_code >= 500:
        logger.error(f"[{exc.code.value}] {exc.message}: {exc.internal_message or ''}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler; production hides the underlying error"""
    http_exc = internal_error(exc, context=f"{request.method} {request.url.path}")
    return JSONResponse(
        status_code=http_exc.status_code,
        content={
            "code": ErrorCode.INTERNAL_ERROR.value,
            "message": http_exc.detail,
            "details": {},
        },
    )


def create_app() -> FastAPI:
    settings = get_settings()
    docs_prefix = "/api/v1" if settings.is_debug else None

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Scheduled agents that scan markets with a chosen strategy",
        lifespan=lifespan,
        docs_url=f"{docs_prefix}/docs" if docs_prefix else None,
        redoc_url=f"{docs_prefix}/redoc" if docs_prefix else None,
        openapi_url=f"{docs_prefix}/openapi.json" if docs_prefix else None,
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers.update(SECURITY_HEADERS)
        if not settings.is_debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # Added last so it wraps everything else
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept"],
    )

    app.include_router(strategies.router, prefix="/api/v1")
    app.include_router(agents.router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        scheduler = get_agent_scheduler() if settings.scheduler_enabled else None
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "scheduler_running": bool(scheduler and scheduler.is_running),
        }

    return app


app = create_app()
