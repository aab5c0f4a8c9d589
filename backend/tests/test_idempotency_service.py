"""Idempotency coordinator tests"""
import threading
import time
from datetime import timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.errors import LockTimeout
from app.models import Base
from app.models.idempotency import IdempotencyLock, IdempotentResult
from app.services.idempotency_service import IdempotencyCoordinator
from app.utils.timeutils import utcnow

KEY = "payment:payment.created:p1"


def hold_lock(db_session, key=KEY, owner="someone-else", expires_in=timedelta(seconds=30)):
    """Insert a lock row from a separate session, as another process would"""
    other = Session(bind=db_session.get_bind())
    try:
        other.add(IdempotencyLock(lock_key=key, owner=owner, expires_at=utcnow() + expires_in))
        other.commit()
    finally:
        other.close()


def store_result(db_session, value, expires_in, key=KEY):
    other = Session(bind=db_session.get_bind())
    try:
        other.add(IdempotentResult(operation_key=key, result_data=value, expires_at=utcnow() + expires_in))
        other.commit()
    finally:
        other.close()


@pytest.mark.critical
class TestExecuteOnce:

    def test_runs_operation_and_caches_result(self, db_session):
        coordinator = IdempotencyCoordinator()
        operation = Mock(return_value={"status": "reconciled"})

        first = coordinator.execute_once(db_session, KEY, 300, operation)
        second = coordinator.execute_once(db_session, KEY, 300, operation)

        assert first.value == {"status": "reconciled"}
        assert first.from_cache is False
        assert second.value == {"status": "reconciled"}
        assert second.from_cache is True
        operation.assert_called_once()
        assert db_session.query(IdempotencyLock).count() == 0

    def test_failures_are_not_cached_and_release_the_lock(self, db_session):
        coordinator = IdempotencyCoordinator()
        failing = Mock(side_effect=RuntimeError("processor down"))

        with pytest.raises(RuntimeError):
            coordinator.execute_once(db_session, KEY, 300, failing)

        assert db_session.query(IdempotencyLock).count() == 0
        assert db_session.query(IdempotentResult).count() == 0

        result = coordinator.execute_once(db_session, KEY, 300, lambda: {"ok": True})
        assert result.value == {"ok": True}
        assert result.from_cache is False

    def test_expired_result_is_recomputed(self, db_session):
        store_result(db_session, {"old": True}, timedelta(seconds=-1))

        result = IdempotencyCoordinator().execute_once(db_session, KEY, 300, lambda: {"new": True})

        assert result.value == {"new": True}
        assert result.from_cache is False
        db_session.expire_all()
        assert db_session.query(IdempotentResult).one().result_data == {"new": True}

    def test_lock_timeout_after_retry_budget(self, db_session):
        hold_lock(db_session)
        sleeps = []
        coordinator = IdempotencyCoordinator(
            max_retries=3, retry_backoff_ms=100, max_backoff_ms=250, sleep=sleeps.append
        )
        operation = Mock()

        with pytest.raises(LockTimeout) as exc_info:
            coordinator.execute_once(db_session, KEY, 300, operation)

        operation.assert_not_called()
        assert sleeps == [0.1, 0.2, 0.25]
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 500
        # The other holder's lock is untouched
        assert db_session.query(IdempotencyLock).one().owner == "someone-else"

    def test_per_call_retry_overrides(self, db_session):
        hold_lock(db_session)
        sleeps = []
        coordinator = IdempotencyCoordinator(max_retries=5, sleep=sleeps.append)

        with pytest.raises(LockTimeout):
            coordinator.execute_once(db_session, KEY, 300, Mock(), max_retries=1, retry_backoff_ms=7)
        assert sleeps == [0.007]

    def test_expired_lock_is_reclaimed(self, db_session):
        hold_lock(db_session, expires_in=timedelta(seconds=-5))
        operation = Mock(return_value={"done": 1})

        result = IdempotencyCoordinator(sleep=Mock()).execute_once(db_session, KEY, 300, operation)

        assert result.value == {"done": 1}
        operation.assert_called_once()
        assert db_session.query(IdempotencyLock).count() == 0

    def test_waiter_returns_result_cached_by_holder(self, db_session):
        hold_lock(db_session)

        def holder_finishes(_seconds):
            store_result(db_session, {"by": "holder"}, timedelta(minutes=5))

        operation = Mock()
        result = IdempotencyCoordinator(sleep=holder_finishes).execute_once(db_session, KEY, 300, operation)

        assert result.value == {"by": "holder"}
        assert result.from_cache is True
        operation.assert_not_called()

    def test_release_only_removes_own_lock(self, db_session):
        hold_lock(db_session, owner="owner-a")
        coordinator = IdempotencyCoordinator()

        coordinator.release_lock(db_session, KEY, "owner-b")
        assert db_session.query(IdempotencyLock).count() == 1

        coordinator.release_lock(db_session, KEY, "owner-a")
        assert db_session.query(IdempotencyLock).count() == 0


@pytest.mark.high
class TestBackoffAndMaintenance:

    def test_backoff_is_capped_exponential(self):
        coordinator = IdempotencyCoordinator(retry_backoff_ms=100, max_backoff_ms=2000)
        delays = [coordinator.backoff_delay(attempt) for attempt in range(7)]
        assert delays == [0.1, 0.2, 0.4, 0.8, 1.6, 2.0, 2.0]

    def test_purge_expired_removes_stale_rows(self, db_session):
        now = utcnow()
        db_session.add_all([
            IdempotencyLock(lock_key="a", owner="x", expires_at=now - timedelta(seconds=1)),
            IdempotencyLock(lock_key="b", owner="x", expires_at=now + timedelta(seconds=30)),
            IdempotentResult(operation_key="a", result_data={}, expires_at=now - timedelta(seconds=1)),
            IdempotentResult(operation_key="b", result_data={}, expires_at=now + timedelta(seconds=30)),
        ])
        db_session.commit()

        assert IdempotencyCoordinator().purge_expired(db_session) == 2
        assert db_session.query(IdempotencyLock).count() == 1
        assert db_session.query(IdempotentResult).count() == 1


@pytest.mark.critical
def test_concurrent_callers_execute_operation_once(tmp_path):
    """N threads with their own sessions: one executes, all observe the same value"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'idempotency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30}
    )
    Base.metadata.create_all(bind=engine)
    ThreadSession = sessionmaker(bind=engine, autoflush=False)

    callers = 5
    executions = []
    counter_lock = threading.Lock()
    barrier = threading.Barrier(callers)
    results = [None] * callers
    errors = []

    def operation():
        with counter_lock:
            executions.append(1)
        time.sleep(0.2)
        return {"value": 42}

    def worker(index):
        db = ThreadSession()
        coordinator = IdempotencyCoordinator(max_retries=50, retry_backoff_ms=20, max_backoff_ms=100)
        try:
            barrier.wait()
            results[index] = coordinator.execute_once(db, KEY, 300, operation).value
        except Exception as e:
            errors.append(e)
        finally:
            db.close()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    engine.dispose()
    assert errors == []
    assert len(executions) == 1
    assert results == [{"value": 42}] * callers
