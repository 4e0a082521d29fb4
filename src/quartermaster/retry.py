"""Retry with exponential backoff."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    is_retryable: Callable[[BaseException], bool],
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """
    Call ``fn`` until it succeeds or attempts run out.

    Waits ``base_delay * 2**(attempt - 1)`` between attempts. Errors for
    which ``is_retryable`` is false propagate immediately; after the last
    attempt the final error is re-raised.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 1
    while True:
        try:
            return fn()
        except Exception as e:
            if not is_retryable(e) or attempt >= max_attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.info(
                "Retryable error (attempt %d/%d), waiting %.1fs: %s",
                attempt,
                max_attempts,
                delay,
                e,
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            sleep(delay)
            attempt += 1
