from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from registry_operator.src.client import ClientSet
from registry_operator.src.errors import is_not_found
from registry_operator.src.metrics import METRICS
from registry_operator.src.objects import ManagedObject
from registry_operator.src.retry import DEFAULT_BACKOFF, Backoff, retry_on_conflict


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of applying a batch of desired objects in order."""

    modified: tuple[ManagedObject, ...]
    error: Exception | None = None
    failed: ManagedObject | None = None

    @property
    def changed(self) -> bool:
        return bool(self.modified)


class Applier:
    """Checksum-guarded create-or-update against the API server.

    Each desired object is hashed once.  The live object is always read from
    the API server rather than a cache, and the write is skipped when its
    checksum annotation already matches.  Only write conflicts are retried
    here, by re-reading and redoing the merge; every other error goes back to
    the caller, whose work queue owns transient-failure backoff.
    """

    def __init__(
        self,
        clients: ClientSet,
        checksum_annotation: str,
        *,
        backoff: Backoff = DEFAULT_BACKOFF,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.clients = clients
        self.checksum_annotation = checksum_annotation
        self.backoff = backoff
        self.logger = logger or logging.getLogger(__name__)
        self.sleep = sleep

    def apply(self, obj: ManagedObject) -> bool:
        """Make the live object match ``obj``; return True if anything was written."""
        client = self.clients.for_kind(obj.kind)
        checksum = obj.checksum()

        def attempt() -> bool:
            try:
                current = client.get(obj.name, obj.namespace)
            except Exception as exc:
                if not is_not_found(exc):
                    raise
                # AlreadyExists is a 409 too, so a racing creator sends us back
                # through the re-read and merge path.
                obj.create(client, self.checksum_annotation, checksum)
                METRICS.apply_total.labels(kind=obj.kind, action="create").inc()
                self.logger.info("Created %r", obj)
                return True

            if obj.up_to_date(current, self.checksum_annotation, checksum):
                METRICS.apply_total.labels(kind=obj.kind, action="noop").inc()
                self.logger.debug("%r is up to date", obj)
                return False

            merged = obj.merge_onto(current)
            obj.update(client, merged, self.checksum_annotation, checksum)
            METRICS.apply_total.labels(kind=obj.kind, action="update").inc()
            self.logger.info("Updated %r", obj)
            return True

        return retry_on_conflict(
            attempt, self.backoff, sleep=self.sleep, operation=f"apply {obj.kind}"
        )

    def apply_all(self, objects: Iterable[ManagedObject]) -> ApplyResult:
        """Apply ``objects`` in order, stopping at the first failure."""
        modified: list[ManagedObject] = []
        for obj in objects:
            try:
                if self.apply(obj):
                    modified.append(obj)
            except Exception as exc:
                self.logger.warning("Unable to apply %r: %s", obj, exc)
                return ApplyResult(modified=tuple(modified), error=exc, failed=obj)
        return ApplyResult(modified=tuple(modified))

    def delete(self, obj: ManagedObject) -> bool:
        """Delete ``obj``; an already-missing object counts as success (returns False)."""
        if not obj.deletable:
            return False
        client = self.clients.for_kind(obj.kind)
        try:
            obj.delete(client)
        except Exception as exc:
            if is_not_found(exc):
                return False
            raise
        METRICS.apply_total.labels(kind=obj.kind, action="delete").inc()
        self.logger.info("Deleted %r", obj)
        return True

    def delete_all(self, objects: Iterable[ManagedObject]) -> list[ManagedObject]:
        """Delete every object, returning those that existed; the first error propagates."""
        return [obj for obj in objects if self.delete(obj)]

