"""Invoice janitor worker lifecycle."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chainpay.common.config import settings
from chainpay.common.db import SessionLocal
from chainpay.common.logging import configure_logging
from chainpay.common.metrics import metrics_response
from chainpay.common.startup import log_startup_config
from chainpay.common.tracing import instrument_app, setup_tracing
from chainpay.services.janitor.service import InvoiceJanitor

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "JANITOR_INTERVAL_SECONDS", "JANITOR_BATCH_SIZE", "NOTIFY_EXPIRED"],
)
janitor = InvoiceJanitor(SessionLocal, service_name=settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the expiry sweep with FastAPI application lifecycle."""

    janitor_task = asyncio.create_task(janitor.run_forever())
    yield
    janitor_task.cancel()


app = FastAPI(title="ChainPay Invoice Janitor", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
