# assignment_agents/idempotency.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import WORKER_ID
from .db import get_conn, insert_idempotency_lock, safe_close, to_sql_ts, transaction

log = logging.getLogger(__name__)


def claim(conn, lock_key: str, ttl_seconds: int, now: datetime, worker_id: str = WORKER_ID) -> bool:
    """
    Simple DB-based idempotency lock.
    Returns True if acquired, False if someone else holds it and not expired.
    """
    with conn.cursor() as cur:
        return insert_idempotency_lock(cur, lock_key, ttl_seconds, worker_id, now)


def renew(conn, lock_key: str, ttl_seconds: int, now: datetime, worker_id: str = WORKER_ID) -> bool:
    """Push the expiry of a lock we still hold. False when it was lost or taken over."""
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE idempotency_locks SET expires_at=%s WHERE lock_key=%s AND locked_by=%s",
            (to_sql_ts(now + timedelta(seconds=int(ttl_seconds))), lock_key, worker_id),
        )
        if cur.rowcount:
            return True
        # same-second renewal changes nothing, so rowcount alone is not enough
        cur.execute(
            "SELECT 1 FROM idempotency_locks WHERE lock_key=%s AND locked_by=%s LIMIT 1",
            (lock_key, worker_id),
        )
        return cur.fetchone() is not None


def release(conn, lock_key: str, worker_id: str = WORKER_ID) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "DELETE FROM idempotency_locks WHERE lock_key=%s AND locked_by=%s",
            (lock_key, worker_id),
        )


class DbTaskLease:
    """
    Cross-process guard so two workers never run the same sweep at once.
    The TTL bounds how long a crashed holder can block the task; a live holder
    keeps calling `renew` so a long sweep never outlives its lease.
    """

    def __init__(
        self,
        conn_factory: Callable[[], Any] = get_conn,
        worker_id: str = WORKER_ID,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._conn_factory = conn_factory
        self._worker_id = worker_id
        self._clock = clock

    @staticmethod
    def _key(task_name: str) -> str:
        return f"sweep:{task_name}"

    def acquire(self, task_name: str, ttl_seconds: int) -> bool:
        conn = self._conn_factory()
        try:
            with transaction(conn):
                return claim(conn, self._key(task_name), ttl_seconds, self._clock(), self._worker_id)
        finally:
            safe_close(conn)

    def renew(self, task_name: str, ttl_seconds: int) -> bool:
        conn = self._conn_factory()
        try:
            with transaction(conn):
                return renew(conn, self._key(task_name), ttl_seconds, self._clock(), self._worker_id)
        finally:
            safe_close(conn)

    def release(self, task_name: str) -> None:
        conn = self._conn_factory()
        try:
            with transaction(conn):
                release(conn, self._key(task_name), self._worker_id)
        finally:
            safe_close(conn)
