"""Exactly-once execution of keyed operations.

Mutual exclusion comes from an insert into idempotency_locks (unique on
lock_key); completed results are cached in idempotent_results. Waiting is
done by polling with capped exponential back-off, so any transactional store
with unique constraints is enough; no coordination service is required.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import LockTimeout, StorageError
from app.core.metrics import idempotency_cache_hits_counter, idempotency_lock_timeouts_counter
from app.models.idempotency import IdempotencyLock, IdempotentResult
from app.utils.timeutils import utcnow

logger = logging.getLogger("idempotency")


@dataclass
class IdempotentExecution:
    value: Any
    from_cache: bool


class IdempotencyCoordinator:
    """Runs an operation at most once per key across processes"""

    def __init__(
        self,
        lock_ttl_seconds: int = 30,
        max_retries: int = 5,
        retry_backoff_ms: int = 100,
        max_backoff_ms: int = 2000,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.lock_ttl_seconds = lock_ttl_seconds
        self.max_retries = max_retries
        self.retry_backoff_ms = retry_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self._sleep = sleep

    def backoff_delay(self, attempt: int, retry_backoff_ms: Optional[int] = None) -> float:
        """Seconds to wait before retry number `attempt` (0-based), capped"""
        base = self.retry_backoff_ms if retry_backoff_ms is None else retry_backoff_ms
        return min(base * (2 ** attempt), self.max_backoff_ms) / 1000.0

    def execute_once(
        self,
        db: Session,
        key: str,
        ttl_seconds: int,
        operation: Callable[[], Any],
        max_retries: Optional[int] = None,
        retry_backoff_ms: Optional[int] = None
    ) -> IdempotentExecution:
        """Execute `operation` once for `key`, or return the cached result.

        Failures are never cached: an exception from `operation` propagates
        after the lock is released, and the next caller runs it again.

        Raises:
            LockTimeout: another holder kept the lock through every retry
            StorageError: lock/result tables unavailable
        """
        retries = self.max_retries if max_retries is None else max_retries

        cached = self.get_cached_result(db, key)
        if cached is not None:
            idempotency_cache_hits_counter.inc()
            logger.info(f"Operation {key} already completed, returning cached result")
            return IdempotentExecution(value=cached.result_data, from_cache=True)

        owner = uuid.uuid4().hex
        acquired = self.acquire_lock(db, key, owner)
        attempt = 0
        while not acquired:
            if attempt >= retries:
                idempotency_lock_timeouts_counter.inc()
                logger.error(f"Could not acquire lock for {key} after {retries} retries")
                raise LockTimeout(f"Lock for {key} still held after {retries} retries")

            delay = self.backoff_delay(attempt, retry_backoff_ms)
            attempt += 1
            logger.info(f"Lock for {key} held elsewhere, retry {attempt}/{retries} in {delay:.3f}s")
            self._sleep(delay)

            cached = self.get_cached_result(db, key)
            if cached is not None:
                idempotency_cache_hits_counter.inc()
                logger.info(f"Operation {key} completed by another process while waiting")
                return IdempotentExecution(value=cached.result_data, from_cache=True)
            acquired = self.acquire_lock(db, key, owner)

        try:
            # The previous holder may have finished between our first check and our insert
            cached = self.get_cached_result(db, key)
            if cached is not None:
                idempotency_cache_hits_counter.inc()
                return IdempotentExecution(value=cached.result_data, from_cache=True)

            value = operation()
            self._store_result(db, key, value, ttl_seconds)
            logger.info(f"Operation {key} executed and cached for {ttl_seconds}s")
            return IdempotentExecution(value=value, from_cache=False)
        except Exception:
            db.rollback()
            raise
        finally:
            self.release_lock(db, key, owner)

    def get_cached_result(self, db: Session, key: str) -> Optional[IdempotentResult]:
        try:
            return db.query(IdempotentResult).filter(
                IdempotentResult.operation_key == key,
                IdempotentResult.expires_at > utcnow()
            ).first()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Could not read idempotent result: {e}", stage="idempotency")

    def acquire_lock(self, db: Session, key: str, owner: str, _reclaimed: bool = False) -> bool:
        """Insert the lock row; False if a live lock exists

        An expired lock (holder crashed) is deleted and the insert retried once.
        """
        now = utcnow()
        try:
            db.add(IdempotencyLock(
                lock_key=key,
                owner=owner,
                expires_at=now + timedelta(seconds=self.lock_ttl_seconds)
            ))
            db.commit()
            logger.debug(f"Lock acquired for {key}")
            return True
        except IntegrityError:
            db.rollback()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Could not acquire lock: {e}", stage="idempotency")

        if _reclaimed:
            return False
        try:
            expired = db.query(IdempotencyLock).filter(
                IdempotencyLock.lock_key == key,
                IdempotencyLock.expires_at <= now
            ).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Could not reclaim expired lock: {e}", stage="idempotency")

        if expired:
            logger.warning(f"Reclaimed expired lock for {key}")
            return self.acquire_lock(db, key, owner, _reclaimed=True)
        return False

    def release_lock(self, db: Session, key: str, owner: str) -> None:
        """Delete our lock row; only the owner's row is removed"""
        try:
            db.query(IdempotencyLock).filter(
                IdempotencyLock.lock_key == key,
                IdempotencyLock.owner == owner
            ).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            # The row expires on its own after lock_ttl_seconds
            logger.error(f"Failed to release lock for {key}: {e}")

    def _store_result(self, db: Session, key: str, value: Any, ttl_seconds: int) -> None:
        now = utcnow()
        try:
            # An expired row would collide with the unique key
            db.query(IdempotentResult).filter(
                IdempotentResult.operation_key == key,
                IdempotentResult.expires_at <= now
            ).delete(synchronize_session=False)
            db.add(IdempotentResult(
                operation_key=key,
                result_data=value,
                expires_at=now + timedelta(seconds=ttl_seconds)
            ))
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning(f"Result for {key} was already cached")
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Could not cache result: {e}", stage="idempotency")

    def purge_expired(self, db: Session) -> int:
        """Delete expired locks and results, returning the number of rows removed"""
        now = utcnow()
        locks = db.query(IdempotencyLock).filter(IdempotencyLock.expires_at <= now).delete(synchronize_session=False)
        results = db.query(IdempotentResult).filter(IdempotentResult.expires_at <= now).delete(synchronize_session=False)
        db.commit()
        return locks + results
