from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from registry_operator.src.controller import Controller
from registry_operator.src.notifier import Informer

LOGGER = logging.getLogger(__name__)


class Supervisor:
    """Owns every informer and controller thread of the process.

    Informers start first; each controller waits for its own caches before
    its worker runs.  Every controller has its own stop token.  A thread
    that crashes, or returns while nobody asked it to stop, fails the whole
    group: :meth:`run` then stops everything and returns False so the process
    exits and gets restarted rather than limping on with a dead worker.
    """

    def __init__(
        self,
        controllers: Iterable[Controller],
        informers: Iterable[Informer],
        *,
        shutdown_timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.controllers = list(controllers)
        self.informers = list(informers)
        self.shutdown_timeout = shutdown_timeout
        self.logger = logger or LOGGER
        self.failed = threading.Event()
        self._stopping = threading.Event()
        self._informer_stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def _spawn(self, name: str, target: Callable[[], Any]) -> threading.Thread:
        def runner() -> None:
            try:
                target()
            except Exception:
                self.logger.exception("%s crashed", name)
                self.failed.set()
                return
            if not self._stopping.is_set():
                self.logger.error("%s exited without a stop signal", name)
                self.failed.set()

        thread = threading.Thread(target=runner, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()
        return thread

    def start(self) -> None:
        for informer in self.informers:
            self._spawn(f"informer-{informer.kind}", lambda i=informer: i.run(self._informer_stop))
        for controller in self.controllers:
            self._spawn(f"controller-{controller.name}", controller.run)
        self.logger.info(
            "Started %d informers and %d controllers", len(self.informers), len(self.controllers)
        )

    def ready(self) -> bool:
        """True once every cache has synced and every worker is running."""
        if self.failed.is_set():
            return False
        return all(i.has_synced() for i in self.informers) and all(
            c.alive() for c in self.controllers
        )

    def healthy(self) -> bool:
        return not self.failed.is_set()

    def stop(self) -> bool:
        """Signal every thread and join them; False if any outlived the timeout."""
        self._stopping.set()
        for controller in self.controllers:
            controller.stop()
        self._informer_stop.set()
        for informer in self.informers:
            informer.request_stop()

        deadline = time.monotonic() + self.shutdown_timeout
        stragglers = []
        for thread in self._threads:
            thread.join(timeout=max(deadline - time.monotonic(), 0))
            if thread.is_alive():
                stragglers.append(thread.name)
        if stragglers:
            self.logger.error(
                "Threads still running after %.0fs: %s", self.shutdown_timeout, ", ".join(stragglers)
            )
            return False
        self.logger.info("All workers stopped")
        return True

    def run(self, shutdown_event: threading.Event, poll_interval: float = 0.5) -> bool:
        """Run until ``shutdown_event`` is set or a thread fails."""
        self.start()
        while not shutdown_event.wait(timeout=poll_interval):
            if self.failed.is_set():
                self.logger.error("A supervised thread failed, shutting down")
                break
        clean = self.stop()
        return clean and not self.failed.is_set()
