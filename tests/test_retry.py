"""
Tests for the caller-side retry policy.
"""

from __future__ import annotations

import pytest

from arcanum.errors import (
    DecryptionFailed,
    EncodingMismatch,
    KeyExchangeRejected,
    NetworkUnavailable,
    TransactionFailed,
)
from arcanum.theurgy.common import backoff_with_jitter, run_with_retry


class Flaky:
    """Raise the queued errors in order, then return "ok"."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def no_sleep(delay: float) -> None:
    pass


class TestBackoff:
    def test_grows_and_caps(self) -> None:
        assert 0.1 <= backoff_with_jitter(0, jitter_factor=0) == 1.0
        assert backoff_with_jitter(3, jitter_factor=0) == 8.0
        assert backoff_with_jitter(20, jitter_factor=0) == 30.0

    def test_jitter_bounds(self) -> None:
        for _ in range(50):
            assert 0.7 <= backoff_with_jitter(0) <= 1.3


class TestRetryPolicy:
    def test_network_failure_retried(self) -> None:
        op = Flaky(NetworkUnavailable("down", phase="query"), NetworkUnavailable("down", phase="query"))
        assert run_with_retry(op, sleep=no_sleep) == "ok"
        assert op.calls == 3

    def test_attempts_are_bounded(self) -> None:
        op = Flaky(*[NetworkUnavailable("down") for _ in range(5)])
        with pytest.raises(NetworkUnavailable):
            run_with_retry(op, attempts=3, sleep=no_sleep)
        assert op.calls == 3

    def test_send_retried_only_before_submission(self) -> None:
        op = Flaky(NetworkUnavailable("down", phase="negotiation"))
        assert run_with_retry(op, is_send=True, sleep=no_sleep) == "ok"

        op = Flaky(NetworkUnavailable("down", phase="submission"))
        with pytest.raises(NetworkUnavailable):
            run_with_retry(op, is_send=True, sleep=no_sleep)
        assert op.calls == 1

    def test_one_fresh_attempt_after_key_exchange(self) -> None:
        op = Flaky(KeyExchangeRejected("no key"))
        assert run_with_retry(op, sleep=no_sleep) == "ok"

        op = Flaky(KeyExchangeRejected("no key"), KeyExchangeRejected("still no key"))
        with pytest.raises(KeyExchangeRejected):
            run_with_retry(op, sleep=no_sleep)
        assert op.calls == 2

    def test_query_decryption_failure_retried_once(self) -> None:
        op = Flaky(DecryptionFailed("bad tag"))
        assert run_with_retry(op, sleep=no_sleep) == "ok"

    def test_send_decryption_failure_not_retried(self) -> None:
        op = Flaky(DecryptionFailed("bad tag"))
        with pytest.raises(DecryptionFailed):
            run_with_retry(op, is_send=True, sleep=no_sleep)

    @pytest.mark.parametrize(
        "error",
        [TransactionFailed("reverted"), EncodingMismatch("shape")],
    )
    def test_terminal_errors_surface_immediately(self, error: Exception) -> None:
        op = Flaky(error)
        with pytest.raises(type(error)):
            run_with_retry(op, sleep=no_sleep)
        assert op.calls == 1
