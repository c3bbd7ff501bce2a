from __future__ import annotations

import logging
import random
import time
from typing import Callable, List, Optional, TypeVar

from property_tracker.config import Settings, get_settings
from property_tracker.errors import TransientStoreConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig:
    def __init__(self, retries=4, base_delay=0.05, factor=2.0, jitter=0.01):
        self.retries = retries
        self.base_delay = base_delay
        self.factor = factor
        self.jitter = jitter

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RetryConfig":
        s = settings or get_settings()
        return cls(
            retries=s.max_retries,
            base_delay=s.retry_base_delay,
            factor=s.retry_factor,
            jitter=s.retry_jitter,
        )


def compute_backoff_delays(
    retries, base_delay=0.05, factor=2.0, jitter=0.01, rand_fn=None
) -> List[float]:
    delays = []
    current = base_delay
    rand_fn = rand_fn or random.random
    for _ in range(retries):
        noise = (rand_fn() * 2 - 1) * jitter
        delays.append(max(0.0, current + noise))
        current *= factor
    return delays


def run_with_retry(
    fn: Callable[[], T],
    retry_config: Optional[RetryConfig] = None,
    *,
    sleep_fn: Callable[[float], None] = time.sleep,
    rand_fn=None,
) -> T:
    """Call `fn`, retrying on TransientStoreConflict with exponential backoff.

    After the last retry the conflict is re-raised with the attempt count so the
    caller can redeliver the observation later.
    """

    cfg = retry_config or RetryConfig.from_settings()
    delays = compute_backoff_delays(
        cfg.retries, cfg.base_delay, cfg.factor, cfg.jitter, rand_fn=rand_fn
    )
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except TransientStoreConflict as exc:
            if attempt > len(delays):
                raise TransientStoreConflict(
                    f"gave up after {attempt} attempts: {exc}", attempts=attempt
                ) from exc
            delay = delays[attempt - 1]
            logger.debug("transient store conflict (attempt %d), retrying in %.3fs: %s", attempt, delay, exc)
            sleep_fn(delay)
