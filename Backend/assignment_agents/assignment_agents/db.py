# assignment_agents/db.py
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

import mysql.connector

from .config import _bool_env, _env, _int_env

log = logging.getLogger(__name__)

SQL_TS = "%Y-%m-%d %H:%M:%S"


@dataclass
class DbConfig:
    host: str
    port: int
    user: str
    password: str
    database: str

    connect_timeout: int = 10
    autocommit: bool = False


def get_db_config() -> DbConfig:
    return DbConfig(
        host=_env("DB_HOST", "127.0.0.1"),
        port=_int_env("DB_PORT", 3306),
        user=_env("DB_USER", "root") or "root",
        password=_env("DB_PASSWORD", "") or "",
        database=_env("DB_NAME", "case_assignment") or "case_assignment",
        connect_timeout=_int_env("DB_CONNECT_TIMEOUT", 10),
        autocommit=_bool_env("DB_AUTOCOMMIT", False),
    )


class _ConnWrapper:
    """
    Wrap mysql-connector connection to ensure:
    - conn.cursor() defaults to dictionary=True
    - existing code using "with conn.cursor() as cur" gets dict rows
    """

    def __init__(self, conn):
        self._conn = conn

    def __getattr__(self, item):
        return getattr(self._conn, item)

    def cursor(self, *args, **kwargs):
        if "dictionary" not in kwargs:
            kwargs["dictionary"] = True
        # buffered avoids "Unread result" surprises in some flows
        if "buffered" not in kwargs:
            kwargs["buffered"] = True
        return self._conn.cursor(*args, **kwargs)


def get_conn():
    cfg = get_db_config()
    conn = mysql.connector.connect(
        host=cfg.host,
        port=cfg.port,
        user=cfg.user,
        password=cfg.password,
        database=cfg.database,
        connection_timeout=cfg.connect_timeout,
        autocommit=cfg.autocommit,
    )
    return _ConnWrapper(conn)


def safe_rollback(conn) -> None:
    try:
        if getattr(conn, "in_transaction", False):
            conn.rollback()
    except mysql.connector.Error as e:
        log.warning("rollback failed: %s", e)


def safe_close(conn) -> None:
    try:
        conn.close()
    except mysql.connector.Error as e:
        log.warning("close failed: %s", e)


@contextmanager
def transaction(conn) -> Iterator[Any]:
    """
    begin -> yield -> commit, rollback on any error.
    Fixes: Transaction already in progress -> rollback before starting.
    """
    safe_rollback(conn)
    conn.start_transaction()
    try:
        yield conn
        conn.commit()
    except BaseException:
        safe_rollback(conn)
        raise


def to_sql_ts(dt: Optional[datetime]) -> Optional[str]:
    return dt.strftime(SQL_TS) if dt else None


def from_sql_ts(v: Any) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v
    return datetime.strptime(str(v)[:19].replace("T", " "), SQL_TS)


def json_dumps_safe(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)


def _table_exists(cur, name: str) -> bool:
    cur.execute(
        """
        SELECT 1
        FROM INFORMATION_SCHEMA.TABLES
        WHERE TABLE_SCHEMA=DATABASE() AND TABLE_NAME=%s
        LIMIT 1
        """,
        (name,),
    )
    return cur.fetchone() is not None


def insert_idempotency_lock(cur, key: str, ttl_seconds: int, locked_by: str, now: datetime) -> bool:
    """
    INSERT a lock row; False when the key is already held and not expired.
    Expired rows for the key are removed first so the lock can be re-taken.
    """
    key = (key or "").strip()[:190]
    if not key:
        return False
    cur.execute(
        "DELETE FROM idempotency_locks WHERE lock_key=%s AND expires_at <= %s",
        (key, to_sql_ts(now)),
    )
    try:
        cur.execute(
            "INSERT INTO idempotency_locks (lock_key, locked_by, expires_at, created_at) VALUES (%s, %s, %s, %s)",
            (key, locked_by, to_sql_ts(now + timedelta(seconds=int(ttl_seconds))), to_sql_ts(now)),
        )
        return True
    except mysql.connector.IntegrityError:
        return False


def enqueue_event(
    conn,
    event_type: str,
    payload: Dict[str, Any],
    *,
    priority: int = 50,
    dedupe_key: Optional[str] = None,
    dedupe_ttl_seconds: int = 24 * 3600,
    correlation_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Insert an event into agent_events (outbox consumed by the matching service).
    Returns inserted id or 0 if deduped.
    """
    now = now or datetime.now()
    with conn.cursor() as cur:
        if dedupe_key:
            ok = insert_idempotency_lock(cur, dedupe_key, dedupe_ttl_seconds, "enqueue_event", now)
            if not ok:
                log.info("enqueue_event deduped key=%s", dedupe_key)
                return 0

        cols: List[str] = []
        vals: List[Any] = []

        def add(col: str, value: Any) -> None:
            cols.append(col)
            vals.append(value)

        add("event_type", str(event_type)[:64])
        add("payload_json", json_dumps_safe(payload or {}))
        add("status", "NEW")
        add("priority", int(priority))
        if correlation_id:
            add("correlation_id", str(correlation_id)[:64])
        add("available_at", to_sql_ts(now))
        add("created_at", to_sql_ts(now))

        placeholders = ", ".join(["%s"] * len(cols))
        col_sql = ", ".join([f"`{c}`" for c in cols])
        cur.execute(f"INSERT INTO agent_events ({col_sql}) VALUES ({placeholders})", tuple(vals))
        return int(cur.lastrowid or 0)
