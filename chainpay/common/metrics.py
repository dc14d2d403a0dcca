"""Prometheus metric definitions shared across workers."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


blocks_processed_total = Counter("blocks_processed_total", "Blocks ingested by chain watchers", ["chain"])
chain_tip_height = Gauge("chain_tip_height", "Latest tip height reported by the ledger reader", ["chain"])
chain_watermark_height = Gauge("chain_watermark_height", "Last fully processed block height", ["chain"])
ledger_reader_errors_total = Counter(
    "ledger_reader_errors_total",
    "Ledger reader failures by kind",
    ["chain", "kind"],
)
reorgs_detected_total = Counter("reorgs_detected_total", "Chain reorganizations detected", ["chain"])
watcher_cycle_seconds = Histogram("watcher_cycle_seconds", "Duration of one watcher poll cycle", ["chain"])

payments_detected_total = Counter("payments_detected_total", "New payment rows ingested", ["chain"])
payments_confirmed_total = Counter("payments_confirmed_total", "Payments promoted to Confirmed", ["chain"])
payments_retracted_total = Counter(
    "payments_retracted_total",
    "Confirming payments retracted or relocated after a reorg",
    ["chain", "action"],
)
duplicate_transfers_skipped_total = Counter(
    "duplicate_transfers_skipped_total",
    "Transfers skipped because the idempotency key already exists",
    ["chain"],
)

invoices_paid_total = Counter("invoices_paid_total", "Invoices transitioned to Paid", ["chain"])
invoices_expired_total = Counter("invoices_expired_total", "Invoices transitioned to Expired", ["service"])
invoice_time_to_paid_seconds = Histogram(
    "invoice_time_to_paid_seconds",
    "Seconds between invoice creation and Paid transition",
    ["chain"],
)

webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Webhook delivery attempts by outcome",
    ["service", "outcome"],
)
webhook_delivery_seconds = Histogram("webhook_delivery_seconds", "Webhook HTTP delivery latency", ["service"])
webhook_pending_total = Gauge(
    "webhook_pending_total",
    "Current count of webhooks not yet sent or failed",
    ["service"],
)
webhook_oldest_pending_age_seconds = Gauge(
    "webhook_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending webhook",
    ["service"],
)
webhook_leases_reclaimed_total = Counter(
    "webhook_leases_reclaimed_total",
    "Processing webhooks reclaimed after their lease expired",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
