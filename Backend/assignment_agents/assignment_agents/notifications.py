from __future__ import annotations

from typing import Any, Callable, Dict, Optional
import json
import logging
from datetime import datetime, date
from decimal import Decimal

from .db import get_conn, insert_idempotency_lock, safe_close, to_sql_ts, transaction
from .models import ADMIN_ROLE, NotificationKind

log = logging.getLogger(__name__)

_ALLOWED_STATUS = {"PENDING", "SENT", "FAILED", "READ"}
_ALLOWED_CHANNEL = {"IN_APP", "EMAIL", "SMS", "PUSH"}

# Escalations sort above everything else in the admin inbox.
_PRIORITY = {
    NotificationKind.ASSIGNMENT_REMINDER: 100,
    NotificationKind.ASSIGNMENT_EXPIRED: 150,
    NotificationKind.ASSIGNMENT_ESCALATION: 250,
}


def _json_safe(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(_json_safe(v) for v in obj)
    if isinstance(obj, dict):
        return {k: _json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_json_safe(v) for v in obj]
    return obj


def _json_dumps_safe(payload: Dict[str, Any]) -> str:
    return json.dumps(_json_safe(payload), ensure_ascii=False, default=str)


def create_notification(
    conn,
    *,
    user_id: Optional[int] = None,
    user_role: Optional[str] = None,
    title: str,
    message: str,
    notif_type: str = "INFO",
    related_table: Optional[str] = None,
    related_id: Optional[int] = None,
    channel: str = "IN_APP",
    status: str = "PENDING",
    meta: Optional[Dict[str, Any]] = None,
    dedupe_key: Optional[str] = None,
    priority: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Insert a notification row.

    Supports:
    - direct user notification (user_id)
    - role broadcast (user_id NULL + user_role set)
    - dedupe_key via idempotency_locks

    Returns False when there is nobody to target or the key was already used.
    """
    if (not user_id or int(user_id) <= 0) and not user_role:
        return False

    ch = (channel or "IN_APP").strip().upper()
    if ch not in _ALLOWED_CHANNEL:
        ch = "IN_APP"
    st = (status or "PENDING").strip().upper()
    if st not in _ALLOWED_STATUS:
        st = "PENDING"
    # For in-app notifications, mark as SENT immediately (no external delivery step)
    if ch == "IN_APP" and st == "PENDING":
        st = "SENT"

    now = now or datetime.now()
    with conn.cursor() as cur:
        if dedupe_key and not insert_idempotency_lock(cur, dedupe_key, 24 * 3600, "notifications", now):
            log.debug("notification deduped key=%s", dedupe_key)
            return False

        meta_payload = dict(meta or {})
        meta_payload.setdefault("notif_type", notif_type)

        cur.execute(
            """
            INSERT INTO notifications
              (user_id, user_role, channel, status, title, message, type, priority,
               related_table, related_id, meta_json, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                int(user_id) if user_id else None,
                str(user_role)[:30] if user_role else None,
                ch,
                st,
                (title or "")[:200],
                (message or "")[:5000],
                (notif_type or "INFO")[:64],
                priority,
                related_table,
                related_id,
                _json_dumps_safe(meta_payload),
                to_sql_ts(now),
            ),
        )
    return True


class DbNotifier:
    """
    Notification collaborator backed by the notifications table.

    Every emit runs in its own connection and transaction so a failure here
    never touches the caller's already-committed state change.
    """

    def __init__(self, conn_factory: Callable[[], Any] = get_conn, clock: Callable[[], datetime] = datetime.now):
        self._conn_factory = conn_factory
        self._clock = clock

    def emit(
        self,
        kind: NotificationKind,
        *,
        recipient_id: Optional[int] = None,
        role: Optional[str] = None,
        payload: Dict[str, Any],
    ) -> bool:
        if recipient_id is None and role is None:
            role = ADMIN_ROLE
        data = dict(payload)
        title = data.pop("title", kind.value.replace("_", " ").title())
        message = data.pop("message", "")
        related_id = data.get("assignment_id") or data.get("case_id")
        conn = self._conn_factory()
        try:
            with transaction(conn):
                return create_notification(
                    conn,
                    user_id=recipient_id,
                    user_role=role,
                    title=title,
                    message=message,
                    notif_type=kind.value,
                    related_table="case_assignments" if data.get("assignment_id") else "cases",
                    related_id=related_id,
                    meta=data,
                    dedupe_key=data.get("dedupe_key"),
                    priority=_PRIORITY.get(kind),
                    now=self._clock(),
                )
        finally:
            safe_close(conn)
