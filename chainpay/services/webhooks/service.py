"""Webhook dispatcher: leases queued events and POSTs them to merchant endpoints."""

import asyncio
import time
from datetime import datetime
from uuid import uuid4

import httpx

from chainpay.common.backoff import backoff_delay
from chainpay.common.config import settings
from chainpay.common.logging import log_context, logger
from chainpay.common.metrics import (
    webhook_deliveries_total,
    webhook_delivery_seconds,
    webhook_leases_reclaimed_total,
)
from chainpay.common.outbox import (
    claim_webhook_batch,
    mark_webhook_failed,
    mark_webhook_sent,
    schedule_webhook_retry,
    update_webhook_backlog_metrics,
)
from chainpay.common.signing import canonical_body, sign_payload
from chainpay.common.tracing import tracer


class WebhookDispatcher:
    """At-least-once delivery with exponential backoff and a terminal Failed state.

    Several dispatchers may run against the same queue: each claims a batch
    under its own lease owner id, and completion writes are ignored once the
    lease has been taken over by someone else.
    """

    def __init__(
        self,
        session_factory,
        client: httpx.AsyncClient | None = None,
        owner: str | None = None,
        batch_size: int | None = None,
        concurrency: int | None = None,
        lease_seconds: int | None = None,
        timeout_seconds: float | None = None,
        service_name: str = "webhooks",
    ) -> None:
        self.session_factory = session_factory
        self.owner = owner or f"{service_name}-{uuid4()}"
        self.batch_size = batch_size or settings.webhook_batch_size
        self.concurrency = concurrency or settings.webhook_concurrency
        self.lease_seconds = lease_seconds or settings.webhook_lease_seconds
        self.timeout_seconds = timeout_seconds or settings.webhook_timeout_seconds
        self.service_name = service_name
        self.client = client or httpx.AsyncClient(timeout=self.timeout_seconds)

    async def dispatch_once(self, now: datetime | None = None) -> int:
        """Claim one batch and deliver it. Returns how many jobs were attempted."""

        with self.session_factory() as db:
            jobs = claim_webhook_batch(db, self.owner, self.batch_size, self.lease_seconds, now)
            db.commit()
        if not jobs:
            return 0
        reclaimed = sum(1 for job in jobs if job["reclaimed"])
        if reclaimed:
            webhook_leases_reclaimed_total.labels(service=self.service_name).inc(reclaimed)
            logger.warning("reclaimed %s webhooks with expired leases", reclaimed)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(job: dict) -> None:
            async with semaphore:
                await self.deliver(job)

        await asyncio.gather(*(bounded(job) for job in jobs))
        return len(jobs)

    def _headers(self, job: dict, body: str) -> dict:
        timestamp = str(int(time.time()))
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Id": job["id"],
            "X-Webhook-Event": job["event_type"],
            "X-Webhook-Timestamp": timestamp,
        }
        if job["secret"]:
            headers["X-Webhook-Signature"] = sign_payload(job["secret"], timestamp, body)
        return headers

    async def deliver(self, job: dict) -> str:
        """POST one claimed job and record the outcome; returns the outcome label."""

        with log_context(webhook_id=job["id"], invoice_id=job["invoice_id"]):
            body = canonical_body(job["payload"])
            error = None
            started = time.perf_counter()
            with tracer.start_as_current_span("webhook.deliver") as span:
                span.set_attribute("webhook.id", job["id"])
                span.set_attribute("webhook.event_type", job["event_type"])
                try:
                    response = await self.client.post(
                        job["url"],
                        content=body,
                        headers=self._headers(job, body),
                        timeout=self.timeout_seconds,
                    )
                    if not 200 <= response.status_code < 300:
                        error = f"HTTP {response.status_code}"
                except httpx.HTTPError as exc:
                    error = f"{type(exc).__name__}: {exc}"
            webhook_delivery_seconds.labels(service=self.service_name).observe(time.perf_counter() - started)

            outcome = self._record(job, error)
            webhook_deliveries_total.labels(service=self.service_name, outcome=outcome).inc()
            return outcome

    def _record(self, job: dict, error: str | None) -> str:
        attempts = job["attempts"] + 1
        with self.session_factory() as db:
            if error is None:
                owned = mark_webhook_sent(db, job["id"], self.owner)
                outcome = "sent"
            elif attempts >= job["max_retries"]:
                owned = mark_webhook_failed(db, job["id"], self.owner, attempts, error)
                outcome = "failed"
            else:
                delay = backoff_delay(job["attempts"])
                owned = schedule_webhook_retry(db, job["id"], self.owner, attempts, delay, error)
                outcome = "retry"
            db.commit()

        if not owned:
            logger.warning("webhook lease lost before completion webhook_id=%s result=%s", job["id"], outcome)
            return "lease_lost"
        if outcome == "sent":
            logger.info("webhook delivered webhook_id=%s event_type=%s attempts=%s", job["id"], job["event_type"], attempts)
        elif outcome == "failed":
            logger.error(
                "webhook failed permanently webhook_id=%s event_type=%s attempts=%s error=%s",
                job["id"],
                job["event_type"],
                attempts,
                error,
            )
        else:
            logger.warning(
                "webhook delivery failed webhook_id=%s attempts=%s retry_in=%.1fs error=%s",
                job["id"],
                attempts,
                delay,
                error,
            )
        return outcome

    async def run_forever(self) -> None:
        """Poll the queue; sleep only when a claim came back empty."""

        while True:
            try:
                delivered = await self.dispatch_once()
                with self.session_factory() as db:
                    update_webhook_backlog_metrics(db, self.service_name)
                if delivered:
                    continue
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("webhook dispatch cycle failed: %s", exc)
            await asyncio.sleep(settings.webhook_poll_interval_seconds)

    async def close(self) -> None:
        await self.client.aclose()
