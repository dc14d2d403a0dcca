"""Retry delay schedule for webhook redelivery."""

import random

from chainpay.common.config import settings


def backoff_delay(
    attempts: int,
    base_seconds: float | None = None,
    cap_seconds: float | None = None,
    jitter: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """Seconds to wait before the next delivery after `attempts` failures.

    Exponential (`base * 2**attempts`) with multiplicative jitter in
    `[0, jitter]`, capped. Jitter is clamped to 1 so a delay is never shorter
    than the one before it.
    """

    base = settings.webhook_backoff_base_seconds if base_seconds is None else base_seconds
    cap = settings.webhook_backoff_cap_seconds if cap_seconds is None else cap_seconds
    spread = settings.webhook_backoff_jitter if jitter is None else jitter
    spread = min(max(spread, 0.0), 1.0)
    draw = (rng or random).uniform(0.0, spread)
    return min(base * (2 ** max(attempts, 0)) * (1.0 + draw), cap)
