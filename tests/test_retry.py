import asyncio
from unittest.mock import patch

import pytest

from tollgate.daemon.control.dispatcher import execute_with_idempotency
from tollgate.daemon.errors import InsufficientBalance, OperationFailed, PersistenceFailed, StorageUnavailable
from tollgate.daemon.ledger import balance as balance_module
from tollgate.daemon.ledger import get_balance, get_record
from tollgate.daemon.ledger.audit import list_audit_records
from tollgate.daemon.ledger.retry import RetryPolicy, debit_with_retry

POLICY = RetryPolicy(max_attempts=4, base_delay=0.01, max_delay=1.0)
META = {"operation_name": "echo", "input_digest": "d1"}


def _flaky_debit(failures: int, *, commit_before_failing: bool = False):
    """Wrap the real debit so the first ``failures`` calls raise StorageUnavailable."""
    calls = {"n": 0}
    real_debit = balance_module.debit

    def _debit(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] <= failures:
            if commit_before_failing:
                # Commit succeeded but the acknowledgement never arrived.
                real_debit(*args, **kwargs)
            raise StorageUnavailable()
        return real_debit(*args, **kwargs)

    return _debit, calls


class TestRetryPolicy:
    def test_backoff_doubles_and_caps(self):
        policy = RetryPolicy(max_attempts=6, base_delay=0.05, max_delay=0.3)
        assert [policy.delay_for(i) for i in range(1, 6)] == [0.05, 0.1, 0.2, 0.3, 0.3]

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TOLLGATE_DEBIT_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("TOLLGATE_DEBIT_BASE_DELAY_MS", "20")
        policy = RetryPolicy.from_env()
        assert policy.max_attempts == 7
        assert policy.base_delay == 0.02

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestDebitWithRetry:
    def test_two_transient_failures_then_success(self, make_identity, no_sleep):
        identity, _ = make_identity(10)
        flaky, calls = _flaky_debit(2)

        with patch("tollgate.daemon.ledger.retry.debit", side_effect=flaky):
            result = asyncio.run(
                debit_with_retry(identity.identity_id, 4, "retry-1", META, policy=POLICY, sleep=no_sleep)
            )

        assert result.success is True
        assert result.replayed is False
        assert calls["n"] == 3
        assert no_sleep.delays == [0.01, 0.02]
        assert get_balance(identity.identity_id) == 6

    def test_lost_acknowledgement_is_found_as_replay(self, make_identity, no_sleep):
        identity, _ = make_identity(10)
        flaky, calls = _flaky_debit(1, commit_before_failing=True)

        with patch("tollgate.daemon.ledger.retry.debit", side_effect=flaky):
            result = asyncio.run(
                debit_with_retry(identity.identity_id, 4, "retry-2", META, policy=POLICY, sleep=no_sleep)
            )

        assert result.success is True
        assert result.replayed is True
        assert result.balance_after == 6
        assert calls["n"] == 2
        assert get_balance(identity.identity_id) == 6

    def test_exhausted_retries_raise_persistence_failed(self, make_identity, no_sleep):
        identity, _ = make_identity(10)

        with patch("tollgate.daemon.ledger.retry.debit", side_effect=StorageUnavailable()) as mock_debit:
            with pytest.raises(PersistenceFailed):
                asyncio.run(
                    debit_with_retry(identity.identity_id, 4, "retry-3", META, policy=POLICY, sleep=no_sleep)
                )

        assert mock_debit.call_count == 4
        assert len(no_sleep.delays) == 3
        assert get_balance(identity.identity_id) == 10
        assert get_record("retry-3") is None

    def test_client_errors_are_not_retried(self, make_identity, no_sleep):
        identity, _ = make_identity(1)

        with patch("tollgate.daemon.ledger.retry.debit", side_effect=balance_module.debit) as mock_debit:
            with pytest.raises(InsufficientBalance):
                asyncio.run(
                    debit_with_retry(identity.identity_id, 4, "retry-4", META, policy=POLICY, sleep=no_sleep)
                )

        assert mock_debit.call_count == 1
        assert no_sleep.delays == []


class TestExecuteWithIdempotency:
    def test_transient_failures_produce_one_debit_and_one_audit(self, make_identity, no_sleep):
        identity, _ = make_identity(10)
        flaky, _ = _flaky_debit(2)
        runs = []

        async def operation():
            runs.append(1)
            return {"ok": True}

        with patch("tollgate.daemon.ledger.retry.debit", side_effect=flaky):
            outcome = asyncio.run(
                execute_with_idempotency(
                    identity.identity_id, 5, "exec-1", operation, META, policy=POLICY, sleep=no_sleep
                )
            )

        assert outcome.success is True
        assert outcome.result == {"ok": True}
        assert outcome.balance_after == 5
        assert len(runs) == 1
        assert get_balance(identity.identity_id) == 5

        audit = list_audit_records(identity.identity_id)
        assert len(audit) == 1
        assert audit[0].action_id == "exec-1"
        assert audit[0].success is True
        assert audit[0].tokens_consumed == 5

    def test_persistence_failure_is_audited_and_operation_skipped(self, make_identity, no_sleep):
        identity, _ = make_identity(10)
        runs = []

        async def operation():
            runs.append(1)
            return "never"

        with patch("tollgate.daemon.ledger.retry.debit", side_effect=StorageUnavailable()):
            with pytest.raises(PersistenceFailed):
                asyncio.run(
                    execute_with_idempotency(
                        identity.identity_id, 5, "exec-2", operation, META, policy=POLICY, sleep=no_sleep
                    )
                )

        assert runs == []
        assert get_balance(identity.identity_id) == 10
        audit = list_audit_records(identity.identity_id)
        assert [a.error_code for a in audit] == ["PERSISTENCE_FAILED"]
        assert audit[0].tokens_consumed == 0

    def test_cancelled_after_debit_is_settled_and_audited(self, make_identity, no_sleep):
        identity, _ = make_identity(10)

        async def operation():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(
                execute_with_idempotency(
                    identity.identity_id, 5, "cx-1", operation, META, policy=POLICY, sleep=no_sleep
                )
            )

        # The debit stands.
        assert get_balance(identity.identity_id) == 5

        record = get_record("cx-1")
        assert record.completed is True
        assert record.success is False

        audit = list_audit_records(identity.identity_id)
        assert len(audit) == 1
        assert audit[0].error_code == "OPERATION_FAILED"
        assert audit[0].tokens_consumed == 5

    def test_replay_of_cancelled_action_is_operation_failed(self, make_identity, no_sleep):
        identity, _ = make_identity(10)
        runs = []

        async def cancelled():
            raise asyncio.CancelledError()

        async def operation():
            runs.append(1)
            return "late"

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(
                execute_with_idempotency(
                    identity.identity_id, 5, "cx-2", cancelled, META, policy=POLICY, sleep=no_sleep
                )
            )
        with pytest.raises(OperationFailed):
            asyncio.run(
                execute_with_idempotency(
                    identity.identity_id, 5, "cx-2", operation, META, policy=POLICY, sleep=no_sleep
                )
            )

        assert runs == []
        assert get_balance(identity.identity_id) == 5
        assert len(list_audit_records(identity.identity_id)) == 1
