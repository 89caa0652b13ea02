"""FastAPI application factory."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from aliado.infra.config import (
    ConfigurationError,
    SyncSchedule,
    get_sync_schedule,
    is_evolution_configured,
)
from aliado.infra.repositories.inbox_repository import inbox_session
from aliado.observability.correlation import (
    CORRELATION_ID_HEADER,
    correlation_scope,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from aliado.observability.logging import get_logger
from aliado.observability.redaction import safe_log_context
from aliado.services import sync_service
from aliado.whatsapp.errors import ProviderError
from aliado.whatsapp.evolution_client import EvolutionClient

from .routers import public
from .routes import auth, conversations, webhook_logs, webhooks_whatsapp

logger = get_logger(__name__)


async def run_sync_once(account_id: str) -> sync_service.SyncResult | None:
    """One scheduled reconciliation run. Failures are logged, never raised."""
    with correlation_scope("sync-"):
        try:
            async with EvolutionClient.from_env() as client:
                return await sync_service.sync(
                    account_id, client=client, session_factory=inbox_session
                )
        except (ConfigurationError, ProviderError) as e:
            logger.warning(
                "scheduled sync failed",
                extra={"extra_fields": safe_log_context(error_type=type(e).__name__, reason=str(e))},
            )
        except Exception:
            logger.exception("scheduled sync crashed")
    return None


async def _periodic_sync(schedule: SyncSchedule) -> None:
    while True:
        await asyncio.sleep(schedule.interval_seconds)
        await run_sync_once(schedule.account_id)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    schedule = get_sync_schedule()
    task: asyncio.Task | None = None
    if schedule.interval_seconds > 0 and schedule.account_id:
        logger.info(
            "periodic sync enabled",
            extra={"extra_fields": safe_log_context(interval_seconds=schedule.interval_seconds)},
        )
        if not is_evolution_configured():
            logger.warning("periodic sync enabled but Evolution is not configured")
        task = asyncio.create_task(_periodic_sync(schedule))
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


def create_app() -> FastAPI:
    """Create the FastAPI app with all routers mounted.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Aliado Inbox",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    # The provider and the dashboard call from other origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[CORRELATION_ID_HEADER],
    )

    app.include_router(public.router)
    app.include_router(auth.router)
    app.include_router(webhooks_whatsapp.router)
    app.include_router(conversations.router)
    app.include_router(webhook_logs.router)

    return app
