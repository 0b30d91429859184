from __future__ import annotations

import pytest
from kubernetes.client import ApiException

from registry_operator.src.retry import Backoff, retry_on_conflict


def test_backoff_delays_grow_by_factor() -> None:
    delays = Backoff(duration=1.0, factor=2.0, jitter=0.0, steps=4).delays()
    assert delays == [1.0, 2.0, 4.0]


def test_backoff_jitter_only_stretches() -> None:
    for delay in Backoff(duration=1.0, factor=1.0, jitter=0.5, steps=10).delays():
        assert 1.0 <= delay <= 1.5


def test_retry_on_conflict_retries_until_success() -> None:
    calls = {"count": 0}
    sleeps: list[float] = []

    def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise ApiException(status=409, reason="Conflict")
        return "done"

    result = retry_on_conflict(
        flaky, Backoff(duration=0.5, factor=2.0, jitter=0.0, steps=4), sleep=sleeps.append
    )

    assert result == "done"
    assert calls["count"] == 3
    assert sleeps == [0.5, 1.0]


def test_retry_on_conflict_gives_up_after_steps() -> None:
    calls = {"count": 0}

    def always_conflicts() -> None:
        calls["count"] += 1
        raise ApiException(status=409, reason="Conflict")

    with pytest.raises(ApiException) as excinfo:
        retry_on_conflict(always_conflicts, Backoff(steps=3), sleep=lambda _: None)

    assert excinfo.value.status == 409
    assert calls["count"] == 3


def test_retry_on_conflict_does_not_retry_other_errors() -> None:
    calls = {"count": 0}

    def fails() -> None:
        calls["count"] += 1
        raise ApiException(status=500, reason="boom")

    with pytest.raises(ApiException):
        retry_on_conflict(fails, sleep=lambda _: None)

    assert calls["count"] == 1
