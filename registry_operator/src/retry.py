from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from registry_operator.src.errors import is_conflict
from registry_operator.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Backoff:
    """Jittered exponential backoff for short local retry loops.

    ``steps`` is the total number of attempts; the wait before attempt ``n``
    is ``duration * factor**(n-1)`` stretched by up to ``jitter``.
    """

    duration: float = 0.01
    factor: float = 5.0
    jitter: float = 0.1
    steps: int = 4

    def delays(self) -> list[float]:
        result: list[float] = []
        duration = self.duration
        for _ in range(max(self.steps - 1, 0)):
            result.append(duration * (1 + random.random() * self.jitter))  # noqa: S311
            duration *= self.factor
        return result


DEFAULT_BACKOFF = Backoff()


def retry_on_conflict(
    fn: Callable[[], T],
    backoff: Backoff = DEFAULT_BACKOFF,
    *,
    sleep: Callable[[float], None] = time.sleep,
    operation: str = "update",
) -> T:
    """Call ``fn`` until it stops raising 409 Conflict or the backoff runs out.

    Only conflicts are retried.  Everything else propagates on the first
    failure, as does the last conflict once ``backoff.steps`` attempts are used.
    """
    delays = backoff.delays()
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as exc:
            if not is_conflict(exc) or attempt >= len(delays):
                raise
            METRICS.conflict_retries_total.labels(operation=operation).inc()
            LOGGER.debug("Conflict during %s, retrying (attempt %d)", operation, attempt + 1)
            sleep(delays[attempt])
            attempt += 1
