from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from google.api_core import exceptions as gexc

T = TypeVar("T")
logger = logging.getLogger(__name__)

TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    gexc.Aborted,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.ResourceExhausted,
    gexc.ServiceUnavailable,
    gexc.TooManyRequests,
)


def with_firestore_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int = 6,
    base_delay_s: float = 0.2,
    max_delay_s: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Retry transient Firestore errors with exponential backoff + full jitter.

    Non-transient errors (AlreadyExists, NotFound, our own store errors) propagate
    on the first attempt.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except TRANSIENT_EXCEPTIONS:
            if attempt >= (max_attempts - 1):
                raise
            sleep_s = min(max_delay_s, base_delay_s * (2**attempt))
            logger.info("firestore_retry iteration=%d sleep_s=%.3f", attempt + 1, float(sleep_s))
            sleep(random.random() * float(sleep_s))
            attempt += 1
