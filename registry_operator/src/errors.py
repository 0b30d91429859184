from __future__ import annotations

import http.client
import json

from kubernetes.client import ApiException
from urllib3.exceptions import ProtocolError

_TRANSIENT_STATUSES = frozenset({408, 429, 500, 503, 504})


class PermanentError(Exception):
    """A configuration defect that retrying cannot fix.

    The reconciler reports these through the Degraded condition and stops
    requeueing until the resource changes.  ``reason`` is copied verbatim into
    the condition.
    """

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message

    def __str__(self) -> str:
        return self.message


class StorageNotConfiguredError(PermanentError):
    """No storage backend is selected and none can be inferred from the platform."""

    def __init__(self, message: str = "storage backend not configured") -> None:
        super().__init__("StorageNotConfigured", message)


class MultipleStoragesError(PermanentError):
    def __init__(self, names: list[str]) -> None:
        super().__init__(
            "multiple storage backends",
            "exactly one storage type should be configured at the same time, "
            f"got {len(names)}: {names}",
        )
        self.names = names


class FinalizeTimeoutError(Exception):
    """The resource was still present when the finalizer wait timed out."""


class OperationCancelled(Exception):
    """A blocking operation observed its stop event."""


def is_permanent(exc: BaseException | None) -> bool:
    return isinstance(exc, PermanentError)


def _status(exc: BaseException) -> int | None:
    if isinstance(exc, ApiException):
        return exc.status
    return None


def is_not_found(exc: BaseException) -> bool:
    return _status(exc) == 404


def is_conflict(exc: BaseException) -> bool:
    return _status(exc) == 409


def _body_reason(exc: ApiException) -> str:
    try:
        body = json.loads(exc.body or "{}")
    except (TypeError, ValueError):
        return ""
    if not isinstance(body, dict):
        return ""
    return str(body.get("reason", ""))


def is_already_exists(exc: BaseException) -> bool:
    if not isinstance(exc, ApiException) or exc.status != 409:
        return False
    return _body_reason(exc) == "AlreadyExists" or exc.reason == "AlreadyExists"


def is_transient(exc: BaseException) -> bool:
    """Return True for server overload, timeouts, and dropped connections.

    Covers 408/504 timeouts, 429 throttling, 500/503 server errors, and the
    EOF or reset errors urllib3 raises when the API server drops a connection.
    """
    if isinstance(exc, ApiException):
        return exc.status in _TRANSIENT_STATUSES
    return isinstance(
        exc, (ProtocolError, ConnectionError, http.client.RemoteDisconnected)
    )


def suggested_delay(exc: BaseException) -> float | None:
    """Return the server's retry hint in seconds, if it sent one.

    Reads the ``Retry-After`` header first and falls back to
    ``details.retryAfterSeconds`` in the Status body.
    """
    if not isinstance(exc, ApiException):
        return None
    headers = exc.headers or {}
    raw = headers.get("Retry-After") or headers.get("retry-after")
    if raw is not None:
        try:
            delay = float(raw)
        except (TypeError, ValueError):
            delay = None
        if delay is not None and delay > 0:
            return delay
    try:
        body = json.loads(exc.body or "{}")
    except (TypeError, ValueError):
        return None
    if not isinstance(body, dict):
        return None
    details = body.get("details") or {}
    seconds = details.get("retryAfterSeconds") if isinstance(details, dict) else None
    if isinstance(seconds, int) and seconds > 0:
        return float(seconds)
    return None


class DependencyNotFoundError(Exception):
    """An object the desired state is built from is not in the cache yet.

    Not permanent: the dependency usually appears once another controller or
    the user creates it, and the work queue retries with backoff.
    """
