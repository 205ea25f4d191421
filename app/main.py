"""Application entrypoint for the email OTP service.

This module wires together the FastAPI application with its lifespan hooks,
the OTP manager and its collaborators (record store, email notifier), the
per-IP rate limiter, error handlers and CORS configuration.
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from app.api.routes import otp_router
from app.core.config import Settings, get_settings
from app.core.logging import setup_logging
from app.core.security import CodeHasher
from app.services.email import build_notifier
from app.services.otp import OTPManager, OTPPolicy, OTPServiceError
from app.services.rate_limit import FixedWindowRateLimiter
from app.services.stores import DatabaseOTPStore, build_store

logger = structlog.get_logger(__name__)


def build_otp_manager(settings: Settings) -> OTPManager:
    """Assemble the manager with the store and notifier selected in settings."""
    return OTPManager(
        store=build_store(settings),
        notifier=build_notifier(settings),
        hasher=CodeHasher(rounds=settings.OTP_HASH_ROUNDS),
        policy=OTPPolicy.from_settings(settings),
    )


async def _sweep_expired(otp_manager: OTPManager, interval: int) -> None:
    """Periodically drop expired records the backend has not evicted on its own."""
    while True:
        await asyncio.sleep(interval)
        try:
            purged = await otp_manager.purge_expired()
        except OTPServiceError:
            logger.warning("otp.sweep.failed")
            continue
        if purged:
            logger.info("otp.sweep.purged", count=purged)


def create_application(
    settings: Optional[Settings] = None,
    otp_manager: Optional[OTPManager] = None,
) -> FastAPI:
    """Assemble and configure the FastAPI application instance.

    - `settings` defaults to the cached environment settings.
    - `otp_manager` may be supplied pre-built (tests inject in-memory
      collaborators this way); otherwise one is built from `settings` at
      startup and closed at shutdown.
    """

    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build shared collaborators on startup and release them on shutdown."""

        manager = otp_manager or build_otp_manager(settings)
        if isinstance(manager.store, DatabaseOTPStore):
            await manager.store.create_schema()

        app.state.otp_manager = manager
        app.state.send_limiter = FixedWindowRateLimiter(
            settings.SEND_OTP_RATE_LIMIT, settings.SEND_OTP_RATE_WINDOW_SECONDS
        )

        sweeper = None
        if settings.OTP_SWEEP_INTERVAL_SECONDS > 0:
            sweeper = asyncio.create_task(_sweep_expired(manager, settings.OTP_SWEEP_INTERVAL_SECONDS))

        logger.info(
            "app.started",
            store=type(manager.store).__name__,
            notifier=type(manager.notifier).__name__,
        )
        yield

        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        if otp_manager is None:
            await manager.close()

    application = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.PROJECT_VERSION,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(OTPServiceError)
    async def otp_service_error_handler(request: Request, exc: OTPServiceError) -> JSONResponse:
        """Hide infrastructure details from clients; the cause is logged."""
        logger.error("otp.internal_error", path=request.url.path, error=str(exc), cause=repr(exc.__cause__))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": {"code": "internal_error", "message": "Internal Server Error"}},
        )

    application.include_router(otp_router)

    @application.get("/")
    async def healthcheck():
        """Lightweight health endpoint used by uptime monitors."""
        return {"message": f"{settings.PROJECT_NAME} is running!"}

    @application.get("/ping", response_class=PlainTextResponse)
    async def ping() -> str:
        return "pong"

    return application


app = create_application()
