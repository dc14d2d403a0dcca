"""Give Failed webhooks another delivery attempt.

Requeued rows keep their id, so receivers de-duplicate them exactly like an
ordinary retry.
"""

import argparse

from chainpay.common.db import SessionLocal
from chainpay.common.outbox import requeue_failed_webhooks


def main() -> None:
    """CLI entrypoint for manual webhook redelivery."""

    parser = argparse.ArgumentParser(description="Move Failed webhooks back to Pending.")
    parser.add_argument("--invoice-id", default=None)
    parser.add_argument("--webhook-id", default=None)
    parser.add_argument("--all", action="store_true", help="Requeue every Failed webhook")
    parser.add_argument("--extra-retries", type=int, default=1)
    args = parser.parse_args()

    if not (args.invoice_id or args.webhook_id or args.all):
        parser.error("Provide --invoice-id, --webhook-id, or --all")

    with SessionLocal() as db:
        count = requeue_failed_webhooks(
            db,
            invoice_id=args.invoice_id,
            webhook_id=args.webhook_id,
            extra_retries=args.extra_retries,
        )
        db.commit()
    print(f"Requeued {count} webhooks")


if __name__ == "__main__":
    main()
