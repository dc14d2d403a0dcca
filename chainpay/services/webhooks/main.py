"""Webhook dispatcher worker lifecycle."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chainpay.common.config import settings
from chainpay.common.db import SessionLocal
from chainpay.common.logging import configure_logging
from chainpay.common.metrics import metrics_response
from chainpay.common.startup import log_startup_config
from chainpay.common.tracing import instrument_app, setup_tracing
from chainpay.services.webhooks.service import WebhookDispatcher

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "WEBHOOK_CONCURRENCY",
        "WEBHOOK_MAX_RETRIES",
        "WEBHOOK_LEASE_SECONDS",
        "WEBHOOK_BACKOFF_BASE_SECONDS",
    ],
)
dispatcher = WebhookDispatcher(SessionLocal, service_name=settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the dispatch loop with FastAPI application lifecycle."""

    dispatch_task = asyncio.create_task(dispatcher.run_forever())
    yield
    dispatch_task.cancel()
    await dispatcher.close()


app = FastAPI(title="ChainPay Webhook Dispatcher", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
