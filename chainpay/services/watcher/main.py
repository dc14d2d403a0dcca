"""Chain watcher worker lifecycle and read-only status endpoints."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from chainpay.common.config import settings
from chainpay.common.db import SessionLocal
from chainpay.common.logging import configure_logging
from chainpay.common.metrics import metrics_response
from chainpay.common.startup import log_startup_config
from chainpay.common.tracing import instrument_app, setup_tracing
from chainpay.services.watcher.service import WatcherService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "WATCHER_POLL_INTERVAL_SECONDS", "WATCHER_MAX_BLOCKS_PER_CYCLE"],
)
service = WatcherService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Start one watcher task per configured chain for the app lifetime."""

    service.start_all()
    yield
    await service.stop_all()


app = FastAPI(title="ChainPay Chain Watcher", lifespan=lifespan)
instrument_app(app)


@app.get("/chains")
def chains():
    """Watched chains with their in-memory watermark."""

    return [
        {
            "name": name,
            "family": watcher.chain.family.value,
            "last_processed_block": watcher.chain.last_processed_block,
            "block_lag": watcher.chain.block_lag,
            "running": not service.tasks[name].done(),
        }
        for name, watcher in service.watchers.items()
    ]


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
