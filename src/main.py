"""
SubSync - billing webhook ingestion and subscription reconciliation.

Main FastAPI application. The relay listener (src.relay) is a separate
process with its own app and shares only the helpers exported here.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.api.router import api_router
from src.config import get_settings
from src.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("subsync")

VERSION = "1.0.0"
SHUTDOWN_GRACE_SECONDS = 10.0


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds X-Correlation-ID (or a fresh id) to the request and echoes it back."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def init_sentry(settings) -> None:
    if not settings.sentry_dsn:
        return
    try:
        import sentry_sdk

        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.app_env, traces_sample_rate=0.1)
        logger.info("Sentry enabled for %s", settings.app_env)
    except Exception as e:
        logger.warning("Could not initialize Sentry: %s", str(e))


def warn_on_insecure_settings(settings) -> None:
    """Startup warnings for settings that are optional locally but not in production."""
    if not settings.dashboard_jwt_secret:
        logger.warning("DASHBOARD_JWT_SECRET not set - admin tokens are signed with APP_SECRET_KEY")
    if not settings.encryption_key:
        logger.warning("ENCRYPTION_KEY not set - provider secrets are read and written as plaintext")
    if not (settings.hotmart_webhook_secret or settings.doppus_webhook_secret):
        logger.warning(
            "No webhook secrets in settings - signatures only verify for providers "
            "with a provider_credentials row"
        )


async def _cancel_workers(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


async def _drain_pipelines() -> None:
    """Give in-flight webhook pipelines a chance to write their outcome."""
    from src.services.ingestion import _background_tasks

    in_flight = list(_background_tasks)
    if not in_flight:
        return
    logger.info("Waiting for %d in-flight webhook pipelines", len(in_flight))
    _, pending = await asyncio.wait(in_flight, timeout=SHUTDOWN_GRACE_SECONDS)
    if pending:
        # Left in received/processing; outbox recovery picks them up after restart
        logger.warning("%d webhook pipelines still running at shutdown", len(pending))


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("SubSync starting (env=%s)", settings.app_env)
    warn_on_insecure_settings(settings)
    init_sentry(settings)

    from src.services.credentials import get_credential_store
    from src.workers.outbox_recovery import run_outbox_recovery

    await get_credential_store().refresh()
    workers = [asyncio.create_task(run_outbox_recovery(), name="outbox_recovery")]
    logger.info("Started %d background workers", len(workers))

    yield

    await _cancel_workers(workers)
    await _drain_pipelines()
    logger.info("SubSync stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="SubSync",
        description="Billing webhook ingestion and subscription reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
