from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from registry_operator.src.client import ResourceClient
from registry_operator.src.errors import (
    FinalizeTimeoutError,
    OperationCancelled,
    is_not_found,
    is_transient,
    suggested_delay,
)
from registry_operator.src.metrics import METRICS
from registry_operator.src.retry import DEFAULT_BACKOFF, Backoff, retry_on_conflict

LOGGER = logging.getLogger(__name__)


class FinalizerState(enum.Enum):
    ACTIVE = "Active"
    DELETING = "Deleting"
    FINALIZED = "Finalized"
    GONE = "Gone"


def has_finalizer(obj: dict[str, Any], finalizer: str) -> bool:
    return finalizer in ((obj.get("metadata") or {}).get("finalizers") or [])


def finalizer_state(obj: dict[str, Any] | None, finalizer: str) -> FinalizerState:
    if obj is None:
        return FinalizerState.GONE
    if not (obj.get("metadata") or {}).get("deletionTimestamp"):
        return FinalizerState.ACTIVE
    if has_finalizer(obj, finalizer):
        return FinalizerState.DELETING
    return FinalizerState.FINALIZED


class FinalizerCoordinator:
    """Runs teardown for a deleted resource, releases it, and waits for it to go.

    Removing the finalizer only allows the store to delete the resource, so
    :meth:`finalize` does not return until an authoritative read reports it
    gone.  Transient failures during that wait, and any error that carries a
    server retry hint, are retried for as long as it takes, honouring the hint;
    ``max_wait`` bounds the whole wait when set, and ``stop_event`` aborts it.
    """

    def __init__(
        self,
        client: ResourceClient,
        finalizer: str,
        *,
        poll_interval: float = 3.0,
        max_wait: float | None = None,
        stop_event: threading.Event | None = None,
        backoff: Backoff = DEFAULT_BACKOFF,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.finalizer = finalizer
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.stop_event = stop_event or threading.Event()
        self.backoff = backoff
        self.clock = clock
        self.sleep = sleep
        self.logger = logger or LOGGER

    def ensure(self, obj: dict[str, Any]) -> bool:
        """Add the finalizer to ``obj`` in place; True if it was missing."""
        if has_finalizer(obj, self.finalizer):
            return False
        metadata = obj.setdefault("metadata", {})
        metadata["finalizers"] = list(metadata.get("finalizers") or []) + [self.finalizer]
        return True

    def finalize(self, obj: dict[str, Any], teardown: Callable[[], Any]) -> None:
        """Tear down and release ``obj`` if it is deleting and holds our finalizer.

        A failing teardown propagates with the finalizer left in place.  The
        wait for deletion only follows a release made by this call; once our
        finalizer is gone, any remaining finalizers belong to someone else.
        """
        name = obj["metadata"]["name"]
        state = finalizer_state(obj, self.finalizer)
        if state is not FinalizerState.DELETING:
            self.logger.debug("Nothing to finalize on %s (%s)", name, state.value)
            return
        self.logger.info("Finalizing %s %s", obj.get("kind", "resource"), name)
        teardown()
        if self.remove_finalizer(name):
            self.wait_for_deletion(name)

    def remove_finalizer(self, name: str) -> bool:
        """Drop our finalizer from the live resource; False if already gone."""

        def attempt() -> bool:
            try:
                current = self.client.get(name)
            except Exception as exc:
                if is_not_found(exc):
                    return False
                raise
            if not has_finalizer(current, self.finalizer):
                return False
            metadata = current["metadata"]
            metadata["finalizers"] = [f for f in metadata["finalizers"] if f != self.finalizer]
            self.client.update(current)
            self.logger.info("Removed finalizer %s from %s", self.finalizer, name)
            return True

        return retry_on_conflict(
            attempt, self.backoff, sleep=self.sleep, operation="remove finalizer"
        )

    def _pause(self, delay: float) -> None:
        if self.stop_event.wait(delay):
            raise OperationCancelled("stopped while waiting for deletion")

    def wait_for_deletion(self, name: str) -> None:
        started = self.clock()
        try:
            while True:
                try:
                    self.client.get(name)
                    delay = self.poll_interval
                except Exception as exc:
                    if is_not_found(exc):
                        self.logger.info("%s has been deleted", name)
                        return
                    hint = suggested_delay(exc)
                    if hint is None and not is_transient(exc):
                        raise
                    delay = hint or self.poll_interval
                    self.logger.warning(
                        "Transient error while waiting for %s to be deleted: %s", name, exc
                    )

                if self.max_wait is not None:
                    elapsed = self.clock() - started
                    if elapsed >= self.max_wait:
                        raise FinalizeTimeoutError(
                            f"{name} still present after {elapsed:.0f}s"
                        )
                    delay = min(delay, self.max_wait - elapsed)
                self._pause(delay)
        finally:
            METRICS.finalizer_wait_seconds.observe(self.clock() - started)
