"""
tests/unit/test_retry_policy.py: Unit tests for RetryPolicy and is_transient_db_error.

What this file proves:
  - Only TransactionConflict is retried; AppError and other exceptions
    propagate after the first attempt
  - Backoff between attempts is base_delay × 2**attempt
  - An exhausted budget raises PROCESSING_ERROR (503) chained from the last conflict
  - Serialization failures, deadlocks, lock timeouts and stale versions are
    classified as transient; constraint violations are not

Unit test constraints:
  - No database, no Flask. The sleep function is replaced with a recorder.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from gatherpay.app.errors import AppError, ErrorCode, TransactionConflict
from gatherpay.app.services.retry import RetryPolicy, retry_on_conflict
from gatherpay.app.services.unit_of_work import is_transient_db_error


def _policy(max_attempts: int = 3, base_delay: float = 1.0):
    sleeps: list[float] = []
    return RetryPolicy(max_attempts=max_attempts, base_delay=base_delay, sleep=sleeps.append), sleeps


# ── RetryPolicy.run ────────────────────────────────────────────────────────

class TestRetryPolicy:

    def test_returns_first_success_without_sleeping(self):
        policy, sleeps = _policy()
        fn = MagicMock(return_value="ok")

        assert policy.run(fn, 1, key="value") == "ok"
        fn.assert_called_once_with(1, key="value")
        assert sleeps == []

    def test_retries_conflicts_with_exponential_backoff(self):
        policy, sleeps = _policy(max_attempts=3, base_delay=0.5)
        fn = MagicMock(side_effect=[TransactionConflict("a"), TransactionConflict("b"), "done"])

        assert policy.run(fn) == "done"
        assert fn.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_exhausted_budget_raises_processing_error(self):
        policy, sleeps = _policy(max_attempts=3, base_delay=1.0)
        last = TransactionConflict("still locked")
        fn = MagicMock(side_effect=[TransactionConflict("one"), TransactionConflict("two"), last])

        with pytest.raises(AppError) as exc_info:
            policy.run(fn)

        err = exc_info.value
        assert err.code == ErrorCode.PROCESSING_ERROR
        assert err.http_status == 503
        assert err.__cause__ is last
        # No sleep after the final attempt.
        assert sleeps == [2.0, 4.0]

    def test_app_errors_are_not_retried(self):
        policy, sleeps = _policy()
        fn = MagicMock(side_effect=AppError(ErrorCode.SPLITS_NOT_APPROVED, "pending", 422))

        with pytest.raises(AppError) as exc_info:
            policy.run(fn)

        assert exc_info.value.code == ErrorCode.SPLITS_NOT_APPROVED
        assert fn.call_count == 1
        assert sleeps == []

    def test_unexpected_errors_are_not_retried(self):
        policy, _ = _policy()
        fn = MagicMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            policy.run(fn)
        assert fn.call_count == 1

    def test_single_attempt_policy(self):
        policy, sleeps = _policy(max_attempts=1)
        fn = MagicMock(side_effect=TransactionConflict("x"))

        with pytest.raises(AppError):
            policy.run(fn)
        assert fn.call_count == 1
        assert sleeps == []

    def test_delay_for(self):
        policy, _ = _policy(base_delay=1.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    @pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"base_delay": -1}])
    def test_rejects_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_decorator_form(self):
        policy, sleeps = _policy(base_delay=0)
        calls = []

        @retry_on_conflict(policy)
        def flaky(value):
            calls.append(value)
            if len(calls) == 1:
                raise TransactionConflict("first")
            return value * 2

        assert flaky(21) == 42
        assert calls == [21, 21]
        assert flaky.__name__ == "flaky"


# ── Transient error classification ─────────────────────────────────────────

def _dbapi_error(cls, message: str, pgcode: str | None = None):
    orig = Exception(message)
    if pgcode is not None:
        orig.pgcode = pgcode
    return cls("UPDATE wallets ...", {}, orig)


class TestTransientErrors:

    @pytest.mark.parametrize("pgcode", ["40001", "40P01", "55P03"])
    def test_postgres_contention_codes(self, pgcode):
        assert is_transient_db_error(_dbapi_error(OperationalError, "contention", pgcode))

    def test_sqlite_lock(self):
        assert is_transient_db_error(_dbapi_error(OperationalError, "database is locked"))

    def test_stale_version(self):
        assert is_transient_db_error(StaleDataError("UPDATE statement expected 1 row, got 0"))

    def test_sqlstate_attribute_is_also_read(self):
        orig = SimpleNamespace(sqlstate="40001")
        error = OperationalError("SELECT 1", {}, orig)
        assert is_transient_db_error(error)

    def test_constraint_violation_is_not_transient(self):
        assert not is_transient_db_error(
            _dbapi_error(IntegrityError, "check constraint failed", "23514")
        )

    def test_non_database_errors_are_not_transient(self):
        assert not is_transient_db_error(ValueError("nope"))
