"""JSON logs on stdout, tagged with the chain, invoice and webhook being worked on.

Workers bind those fields with `log_context` around a unit of work (one
watcher cycle, one settlement, one delivery). The active OpenTelemetry trace
id is attached as well, so a log line can be matched to its span.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from opentelemetry import trace
from pythonjsonlogger.json import JsonFormatter

from chainpay.common.config import settings


chain_ctx: ContextVar[str] = ContextVar("chain", default="")
invoice_id_ctx: ContextVar[str] = ContextVar("invoice_id", default="")
webhook_id_ctx: ContextVar[str] = ContextVar("webhook_id", default="")

_FIELDS = {"chain": chain_ctx, "invoice_id": invoice_id_ctx, "webhook_id": webhook_id_ctx}

# httpx logs every request at INFO; RPC polling and webhook POSTs would drown the worker logs.
_NOISY_LOGGERS = ("httpx", "httpcore")


@contextmanager
def log_context(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for the duration of the block; None leaves a field as is."""

    tokens = []
    for name, value in fields.items():
        if value is None:
            continue
        var = _FIELDS[name]
        tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class ContextFilter(logging.Filter):
    """Copy the worker name, bound correlation fields and trace id onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in _FIELDS.items():
            setattr(record, name, var.get())
        span_context = trace.get_current_span().get_span_context()
        record.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else ""
        return True


def configure_logging() -> None:
    """Configure root logger once per worker process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(chain)s %(invoice_id)s %(webhook_id)s %(message)s"
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("chainpay")
