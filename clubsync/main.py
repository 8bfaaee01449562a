"""
FastAPI application factory for the local sync bridge.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clubsync.api import health, messages, sync
from clubsync.api.middleware import RequestLoggingMiddleware
from clubsync.core.config import Settings, get_settings
from clubsync.core.logging import get_logger, setup_logging
from clubsync.engine.errors import ConfirmationFailed, OperationRejected, RateLimited
from clubsync.engine.session import ClubSession
from clubsync.schemas.message import ApplyStatus


async def operation_rejected_handler(request: Request, exc: OperationRejected) -> JSONResponse:
    status_code = 404 if exc.result.status == ApplyStatus.MISSING else 422
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def confirmation_failed_handler(request: Request, exc: ConfirmationFailed) -> JSONResponse:
    detail = exc.cause.detail if exc.cause is not None else str(exc)
    return JSONResponse(status_code=409, content={"detail": str(detail)})


async def rate_limited_handler(request: Request, exc: RateLimited) -> JSONResponse:
    return JSONResponse(status_code=429, content={"detail": str(exc)})


def create_app(session: ClubSession, settings: Settings = None) -> FastAPI:
    """Create the bridge around an already-built engine session."""
    settings = settings or get_settings()

    setup_logging(settings)
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting sync bridge...")
        await session.connect()
        yield
        logger.info("Shutting down sync bridge...")
        await session.logout()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Local bridge exposing room snapshots and message actions of the sync engine",
        lifespan=lifespan,
    )
    app.state.session = session

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(OperationRejected, operation_rejected_handler)
    app.add_exception_handler(ConfirmationFailed, confirmation_failed_handler)
    app.add_exception_handler(RateLimited, rate_limited_handler)

    app.include_router(health.router)
    app.include_router(messages.router)
    app.include_router(sync.router)

    logger.info(
        "Application created",
        extra={"extra_data": {"app_name": settings.app_name, "version": settings.app_version}}
    )
    return app
