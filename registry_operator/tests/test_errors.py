from __future__ import annotations

import http.client
import json

import pytest
from kubernetes.client import ApiException
from urllib3.exceptions import ProtocolError

from registry_operator.src.errors import (
    MultipleStoragesError,
    PermanentError,
    StorageNotConfiguredError,
    is_already_exists,
    is_conflict,
    is_not_found,
    is_permanent,
    is_transient,
    suggested_delay,
)


def test_storage_not_configured_is_permanent_with_reason() -> None:
    error = StorageNotConfiguredError()
    assert is_permanent(error)
    assert error.reason == "StorageNotConfigured"


def test_multiple_storages_names_backends() -> None:
    error = MultipleStoragesError(["s3", "gcs"])
    assert is_permanent(error)
    assert error.reason == "multiple storage backends"
    assert "got 2" in str(error)


def test_plain_errors_are_not_permanent() -> None:
    assert not is_permanent(RuntimeError("x"))
    assert not is_permanent(None)
    assert is_permanent(PermanentError("r", "m"))


def test_status_classification() -> None:
    assert is_not_found(ApiException(status=404))
    assert is_conflict(ApiException(status=409))
    assert not is_conflict(ValueError("409"))


def test_already_exists_from_reason_or_body() -> None:
    assert is_already_exists(ApiException(status=409, reason="AlreadyExists"))

    from_body = ApiException(status=409, reason="Conflict")
    from_body.body = json.dumps({"kind": "Status", "reason": "AlreadyExists"})
    assert is_already_exists(from_body)

    assert not is_already_exists(ApiException(status=409, reason="Conflict"))
    assert not is_already_exists(ApiException(status=404, reason="AlreadyExists"))


@pytest.mark.parametrize("status", [408, 429, 500, 503, 504])
def test_transient_statuses(status: int) -> None:
    assert is_transient(ApiException(status=status))


@pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422])
def test_non_transient_statuses(status: int) -> None:
    assert not is_transient(ApiException(status=status))


def test_dropped_connections_are_transient() -> None:
    assert is_transient(ProtocolError("Connection aborted."))
    assert is_transient(ConnectionResetError())
    assert is_transient(http.client.RemoteDisconnected("closed"))
    assert not is_transient(ValueError("bad"))


def test_suggested_delay_prefers_header() -> None:
    exc = ApiException(status=429)
    exc.headers = {"Retry-After": "7"}
    exc.body = json.dumps({"details": {"retryAfterSeconds": 3}})
    assert suggested_delay(exc) == 7.0


def test_suggested_delay_falls_back_to_body() -> None:
    exc = ApiException(status=504)
    exc.body = json.dumps({"details": {"retryAfterSeconds": 3}})
    assert suggested_delay(exc) == 3.0


def test_suggested_delay_ignores_garbage() -> None:
    exc = ApiException(status=503)
    exc.headers = {"Retry-After": "soon"}
    exc.body = "not json"
    assert suggested_delay(exc) is None
    assert suggested_delay(RuntimeError("x")) is None
