# assignment_agents/repositories.py
"""
MySQL-backed stores.

Each store works on the connection of the enclosing MySqlStorage.transaction();
none of them commit. Timestamps are passed in by the caller so the whole
engine shares one clock.
"""
from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set

import mysql.connector

from .db import _table_exists, from_sql_ts, get_conn, safe_close, to_sql_ts, transaction
from .errors import AssignmentConflictError, NotFoundError
from .models import (
    AssignmentPriority,
    AssignmentStatus,
    CaseAssignment,
    CaseAssignmentReminder,
    CaseRecord,
    CaseStatus,
    DoctorWorkloadSnapshot,
    UrgencyLevel,
    norm_enum,
)

log = logging.getLogger(__name__)


SCHEMA: Dict[str, str] = {
    "cases": """
        CREATE TABLE IF NOT EXISTS cases (
          id BIGINT PRIMARY KEY AUTO_INCREMENT,
          title VARCHAR(255) NOT NULL DEFAULT '',
          status VARCHAR(32) NOT NULL DEFAULT 'PENDING',
          urgency_level VARCHAR(16) NOT NULL DEFAULT 'MEDIUM',
          required_specialization VARCHAR(100) NULL,
          secondary_specializations_json TEXT NULL,
          created_at DATETIME NULL,
          KEY idx_cases_status (status)
        )
    """,
    "doctors": """
        CREATE TABLE IF NOT EXISTS doctors (
          id BIGINT PRIMARY KEY,
          is_available TINYINT(1) NOT NULL DEFAULT 1,
          active_cases INT NOT NULL DEFAULT 0,
          max_active_cases INT NOT NULL DEFAULT 10,
          today_appointments INT NOT NULL DEFAULT 0,
          max_daily_appointments INT NOT NULL DEFAULT 8,
          average_rating DOUBLE NULL,
          emergency_mode TINYINT(1) NOT NULL DEFAULT 0,
          emergency_mode_enabled_at DATETIME NULL,
          primary_specialization VARCHAR(100) NULL,
          sub_specializations_json TEXT NULL,
          last_workload_update DATETIME NULL
        )
    """,
    "case_assignments": """
        CREATE TABLE IF NOT EXISTS case_assignments (
          id BIGINT PRIMARY KEY AUTO_INCREMENT,
          case_id BIGINT NOT NULL,
          doctor_id BIGINT NOT NULL,
          status VARCHAR(16) NOT NULL,
          priority VARCHAR(16) NOT NULL DEFAULT 'PRIMARY',
          assigned_at DATETIME NOT NULL,
          responded_at DATETIME NULL,
          expires_at DATETIME NOT NULL,
          assignment_reason TEXT NULL,
          rejection_reason TEXT NULL,
          matching_score DOUBLE NOT NULL DEFAULT 0,
          pending_case_id BIGINT AS (CASE WHEN status = 'PENDING' THEN case_id END) STORED,
          UNIQUE KEY uq_case_assignments_pending (pending_case_id),
          KEY idx_ca_status_expires (status, expires_at),
          KEY idx_ca_status_assigned (status, assigned_at),
          KEY idx_ca_case_status (case_id, status)
        )
    """,
    "case_assignment_reminders": """
        CREATE TABLE IF NOT EXISTS case_assignment_reminders (
          id BIGINT PRIMARY KEY AUTO_INCREMENT,
          assignment_id BIGINT NOT NULL,
          reminder_hour INT NOT NULL,
          sent_at DATETIME NOT NULL,
          hours_remaining INT NOT NULL,
          notes TEXT NULL,
          UNIQUE KEY uq_reminder_checkpoint (assignment_id, reminder_hour),
          KEY idx_reminder_sent_at (sent_at)
        )
    """,
    "idempotency_locks": """
        CREATE TABLE IF NOT EXISTS idempotency_locks (
          lock_key VARCHAR(190) PRIMARY KEY,
          locked_by VARCHAR(64) NULL,
          expires_at DATETIME NOT NULL,
          created_at DATETIME NULL
        )
    """,
    "notifications": """
        CREATE TABLE IF NOT EXISTS notifications (
          id BIGINT PRIMARY KEY AUTO_INCREMENT,
          user_id BIGINT NULL,
          user_role VARCHAR(30) NULL,
          channel VARCHAR(16) NOT NULL DEFAULT 'IN_APP',
          status VARCHAR(16) NOT NULL DEFAULT 'PENDING',
          title VARCHAR(200) NOT NULL DEFAULT '',
          message TEXT NULL,
          type VARCHAR(64) NOT NULL DEFAULT 'INFO',
          priority INT NULL,
          related_table VARCHAR(80) NULL,
          related_id BIGINT NULL,
          meta_json TEXT NULL,
          created_at DATETIME NULL
        )
    """,
    "agent_events": """
        CREATE TABLE IF NOT EXISTS agent_events (
          id BIGINT PRIMARY KEY AUTO_INCREMENT,
          event_type VARCHAR(64) NOT NULL,
          payload_json TEXT NULL,
          status VARCHAR(16) NOT NULL DEFAULT 'NEW',
          priority INT NOT NULL DEFAULT 50,
          correlation_id VARCHAR(64) NULL,
          attempts INT NOT NULL DEFAULT 0,
          available_at DATETIME NULL,
          created_at DATETIME NULL,
          KEY idx_events_status (status, available_at)
        )
    """,
}


def ensure_schema(conn) -> List[str]:
    """Create missing tables. Returns the names that were created."""
    created: List[str] = []
    with transaction(conn):
        with conn.cursor() as cur:
            for name, ddl in SCHEMA.items():
                if _table_exists(cur, name):
                    continue
                cur.execute(ddl)
                created.append(name)
    if created:
        log.info("Created tables: %s", ", ".join(created))
    return created


def _json_list(v: Any) -> tuple:
    if not v:
        return ()
    if isinstance(v, (list, tuple)):
        return tuple(str(x) for x in v)
    try:
        data = json.loads(v)
    except (TypeError, ValueError):
        return tuple(p.strip() for p in str(v).split(",") if p.strip())
    return tuple(str(x) for x in data) if isinstance(data, list) else ()


def _row_to_assignment(row: Dict[str, Any]) -> CaseAssignment:
    return CaseAssignment(
        id=int(row["id"]),
        case_id=int(row["case_id"]),
        doctor_id=int(row["doctor_id"]),
        status=norm_enum(AssignmentStatus, row["status"]),
        priority=norm_enum(AssignmentPriority, row.get("priority"), default=AssignmentPriority.PRIMARY),
        assigned_at=from_sql_ts(row["assigned_at"]),
        expires_at=from_sql_ts(row["expires_at"]),
        responded_at=from_sql_ts(row.get("responded_at")),
        assignment_reason=row.get("assignment_reason") or "",
        rejection_reason=row.get("rejection_reason"),
        matching_score=float(row.get("matching_score") or 0.0),
    )


def _row_to_case(row: Dict[str, Any]) -> CaseRecord:
    return CaseRecord(
        id=int(row["id"]),
        title=row.get("title") or "",
        status=norm_enum(CaseStatus, row.get("status"), default=CaseStatus.PENDING),
        urgency_level=norm_enum(UrgencyLevel, row.get("urgency_level"), default=UrgencyLevel.MEDIUM),
        required_specialization=row.get("required_specialization"),
        secondary_specializations=_json_list(row.get("secondary_specializations_json")),
        created_at=from_sql_ts(row.get("created_at")),
    )


def _row_to_doctor(row: Dict[str, Any]) -> DoctorWorkloadSnapshot:
    rating = row.get("average_rating")
    return DoctorWorkloadSnapshot(
        doctor_id=int(row["id"]),
        is_available=bool(row.get("is_available")),
        active_cases=int(row.get("active_cases") or 0),
        max_active_cases=int(row.get("max_active_cases") or 0),
        today_appointments=int(row.get("today_appointments") or 0),
        max_daily_appointments=int(row.get("max_daily_appointments") or 0),
        average_rating=float(rating) if rating is not None else None,
        emergency_mode=bool(row.get("emergency_mode")),
        emergency_mode_enabled_at=from_sql_ts(row.get("emergency_mode_enabled_at")),
        primary_specialization=row.get("primary_specialization"),
        sub_specializations=_json_list(row.get("sub_specializations_json")),
    )


_ASSIGNMENT_COLS = (
    "id, case_id, doctor_id, status, priority, assigned_at, responded_at, expires_at, "
    "assignment_reason, rejection_reason, matching_score"
)


class MySqlAssignmentStore:
    def __init__(self, conn) -> None:
        self._conn = conn

    def _select(self, where: str, params: tuple, suffix: str = "") -> List[CaseAssignment]:
        with self._conn.cursor() as cur:
            cur.execute(f"SELECT {_ASSIGNMENT_COLS} FROM case_assignments WHERE {where} {suffix}", params)
            return [_row_to_assignment(r) for r in cur.fetchall() or []]

    def _scalar(self, sql: str, params: tuple) -> int:
        with self._conn.cursor() as cur:
            cur.execute(sql, params)
            row = cur.fetchone() or {}
            return int(row.get("c") or 0)

    def get(self, assignment_id: int, for_update: bool = False) -> Optional[CaseAssignment]:
        rows = self._select("id=%s", (int(assignment_id),), "FOR UPDATE" if for_update else "LIMIT 1")
        return rows[0] if rows else None

    def find_pending_for_case(self, case_id: int) -> Optional[CaseAssignment]:
        rows = self._select("case_id=%s AND status=%s", (int(case_id), AssignmentStatus.PENDING.value), "LIMIT 1")
        return rows[0] if rows else None

    def create(
        self,
        *,
        case_id: int,
        doctor_id: int,
        priority: AssignmentPriority,
        assigned_at: datetime,
        expires_at: datetime,
        reason: str,
        matching_score: float,
    ) -> CaseAssignment:
        # serialise concurrent offers for the same case on the case row
        with self._conn.cursor() as cur:
            cur.execute("SELECT id FROM cases WHERE id=%s FOR UPDATE", (int(case_id),))
            cur.fetchone()
        pending = self.find_pending_for_case(case_id)
        if pending:
            raise AssignmentConflictError(case_id, pending.id)
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO case_assignments
                      (case_id, doctor_id, status, priority, assigned_at, expires_at,
                       assignment_reason, matching_score)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        int(case_id),
                        int(doctor_id),
                        AssignmentStatus.PENDING.value,
                        norm_enum(AssignmentPriority, priority).value,
                        to_sql_ts(assigned_at),
                        to_sql_ts(expires_at),
                        reason,
                        float(matching_score),
                    ),
                )
                new_id = int(cur.lastrowid or 0)
        except mysql.connector.IntegrityError:
            pending = self.find_pending_for_case(case_id)
            raise AssignmentConflictError(case_id, pending.id if pending else 0)
        return CaseAssignment(
            id=new_id,
            case_id=int(case_id),
            doctor_id=int(doctor_id),
            status=AssignmentStatus.PENDING,
            priority=norm_enum(AssignmentPriority, priority),
            assigned_at=assigned_at,
            expires_at=expires_at,
            assignment_reason=reason,
            matching_score=float(matching_score),
        )

    def transition(
        self,
        assignment_id: int,
        *,
        expected: AssignmentStatus,
        target: AssignmentStatus,
        responded_at: datetime,
        rejection_reason: Optional[str] = None,
    ) -> bool:
        sets = ["status=%s", "responded_at=%s"]
        params: List[Any] = [target.value, to_sql_ts(responded_at)]
        if rejection_reason is not None:
            sets.append("rejection_reason=%s")
            params.append(rejection_reason)
        params.extend([int(assignment_id), expected.value])
        with self._conn.cursor() as cur:
            cur.execute(
                f"UPDATE case_assignments SET {', '.join(sets)} WHERE id=%s AND status=%s",
                tuple(params),
            )
            return cur.rowcount == 1

    def find_expired_pending(self, cutoff: datetime) -> List[CaseAssignment]:
        return self._select(
            "status=%s AND expires_at <= %s",
            (AssignmentStatus.PENDING.value, to_sql_ts(cutoff)),
            "ORDER BY expires_at ASC, id ASC",
        )

    def find_pending_assigned_between(self, start: datetime, end: datetime) -> List[CaseAssignment]:
        return self._select(
            "status=%s AND assigned_at BETWEEN %s AND %s",
            (AssignmentStatus.PENDING.value, to_sql_ts(start), to_sql_ts(end)),
            "ORDER BY id ASC",
        )

    def count_by_case_and_status(self, case_id: int, status: AssignmentStatus) -> int:
        return self._scalar(
            "SELECT COUNT(*) AS c FROM case_assignments WHERE case_id=%s AND status=%s",
            (int(case_id), status.value),
        )

    def doctor_ids_by_case_and_status(self, case_id: int, status: AssignmentStatus) -> Set[int]:
        with self._conn.cursor() as cur:
            cur.execute(
                "SELECT DISTINCT doctor_id FROM case_assignments WHERE case_id=%s AND status=%s",
                (int(case_id), status.value),
            )
            return {int(r["doctor_id"]) for r in cur.fetchall() or []}

    def exists_expired_since(self, case_id: int, doctor_id: int, since: datetime) -> bool:
        return (
            self._scalar(
                """
                SELECT COUNT(*) AS c FROM case_assignments
                WHERE case_id=%s AND doctor_id=%s AND status=%s AND responded_at > %s
                """,
                (int(case_id), int(doctor_id), AssignmentStatus.EXPIRED.value, to_sql_ts(since)),
            )
            > 0
        )

    def count_by_status(self, status: AssignmentStatus) -> int:
        return self._scalar("SELECT COUNT(*) AS c FROM case_assignments WHERE status=%s", (status.value,))

    def count_by_status_responded_after(self, status: AssignmentStatus, since: datetime) -> int:
        return self._scalar(
            "SELECT COUNT(*) AS c FROM case_assignments WHERE status=%s AND responded_at > %s",
            (status.value, to_sql_ts(since)),
        )

    def count_cases_with_expirations_at_least(self, threshold: int) -> int:
        return self._scalar(
            """
            SELECT COUNT(*) AS c FROM (
              SELECT case_id FROM case_assignments WHERE status=%s
              GROUP BY case_id HAVING COUNT(*) >= %s
            ) t
            """,
            (AssignmentStatus.EXPIRED.value, int(threshold)),
        )


class MySqlReminderStore:
    def __init__(self, conn) -> None:
        self._conn = conn

    def exists(self, assignment_id: int, reminder_hour: int) -> bool:
        with self._conn.cursor() as cur:
            cur.execute(
                "SELECT 1 FROM case_assignment_reminders WHERE assignment_id=%s AND reminder_hour=%s LIMIT 1",
                (int(assignment_id), int(reminder_hour)),
            )
            return cur.fetchone() is not None

    def record(self, reminder: CaseAssignmentReminder) -> bool:
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO case_assignment_reminders
                      (assignment_id, reminder_hour, sent_at, hours_remaining)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (
                        int(reminder.assignment_id),
                        int(reminder.reminder_hour),
                        to_sql_ts(reminder.sent_at),
                        int(reminder.hours_remaining),
                    ),
                )
            return True
        except mysql.connector.IntegrityError:
            return False

    def delete_sent_before(self, cutoff: datetime) -> int:
        with self._conn.cursor() as cur:
            cur.execute("DELETE FROM case_assignment_reminders WHERE sent_at < %s", (to_sql_ts(cutoff),))
            return int(cur.rowcount or 0)

    def count_sent_after(self, since: datetime) -> int:
        with self._conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) AS c FROM case_assignment_reminders WHERE sent_at > %s", (to_sql_ts(since),))
            row = cur.fetchone() or {}
            return int(row.get("c") or 0)


class MySqlCaseStore:
    def __init__(self, conn) -> None:
        self._conn = conn

    def get(self, case_id: int, for_update: bool = False) -> Optional[CaseRecord]:
        with self._conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT id, title, status, urgency_level, required_specialization,
                       secondary_specializations_json, created_at
                FROM cases WHERE id=%s {"FOR UPDATE" if for_update else "LIMIT 1"}
                """,
                (int(case_id),),
            )
            row = cur.fetchone()
        return _row_to_case(row) if row else None

    def update_status(self, case_id: int, status: CaseStatus, expected: Optional[CaseStatus] = None) -> bool:
        sql = "UPDATE cases SET status=%s WHERE id=%s"
        params: List[Any] = [status.value, int(case_id)]
        if expected is not None:
            sql += " AND status=%s"
            params.append(expected.value)
        with self._conn.cursor() as cur:
            cur.execute(sql, tuple(params))
            return cur.rowcount == 1


_DOCTOR_COLS = (
    "id, is_available, active_cases, max_active_cases, today_appointments, max_daily_appointments, "
    "average_rating, emergency_mode, emergency_mode_enabled_at, primary_specialization, sub_specializations_json"
)


class MySqlDoctorDirectory:
    def __init__(self, conn, clock: Callable[[], datetime] = datetime.now) -> None:
        self._conn = conn
        self._clock = clock

    def get_workload_snapshot(self, doctor_id: int) -> Optional[DoctorWorkloadSnapshot]:
        with self._conn.cursor() as cur:
            cur.execute(f"SELECT {_DOCTOR_COLS} FROM doctors WHERE id=%s LIMIT 1", (int(doctor_id),))
            row = cur.fetchone()
        return _row_to_doctor(row) if row else None

    def adjust_workload(self, doctor_id: int, delta: int) -> None:
        # single-statement update: no read-modify-write window
        with self._conn.cursor() as cur:
            cur.execute(
                """
                UPDATE doctors
                SET active_cases = GREATEST(0, active_cases + %s),
                    today_appointments = GREATEST(0, today_appointments + %s),
                    last_workload_update = %s
                WHERE id=%s
                """,
                (int(delta), int(delta), to_sql_ts(self._clock()), int(doctor_id)),
            )
            changed = cur.rowcount
        # rowcount is 0 when the clamped values and timestamp did not change
        if changed == 0 and self.get_workload_snapshot(doctor_id) is None:
            raise NotFoundError(f"Doctor {doctor_id} not found")

    def list_by_specializations(self, specializations: Iterable[str]) -> List[DoctorWorkloadSnapshot]:
        wanted = sorted({s for s in specializations if s})
        with self._conn.cursor() as cur:
            if wanted:
                placeholders = ",".join(["%s"] * len(wanted))
                likes = " OR ".join(["sub_specializations_json LIKE %s"] * len(wanted))
                cur.execute(
                    f"""
                    SELECT {_DOCTOR_COLS} FROM doctors
                    WHERE primary_specialization IN ({placeholders}) OR {likes}
                    ORDER BY id ASC
                    """,
                    tuple(wanted) + tuple(f'%"{s}"%' for s in wanted),
                )
            else:
                cur.execute(f"SELECT {_DOCTOR_COLS} FROM doctors ORDER BY id ASC")
            return [_row_to_doctor(r) for r in cur.fetchall() or []]

    def find_emergency_mode_enabled_before(self, cutoff: datetime) -> List[DoctorWorkloadSnapshot]:
        with self._conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_DOCTOR_COLS} FROM doctors
                WHERE emergency_mode=1 AND emergency_mode_enabled_at IS NOT NULL
                  AND emergency_mode_enabled_at < %s
                """,
                (to_sql_ts(cutoff),),
            )
            return [_row_to_doctor(r) for r in cur.fetchall() or []]

    def disable_emergency_mode(self, doctor_id: int) -> bool:
        with self._conn.cursor() as cur:
            cur.execute(
                "UPDATE doctors SET emergency_mode=0, emergency_mode_enabled_at=NULL WHERE id=%s AND emergency_mode=1",
                (int(doctor_id),),
            )
            return cur.rowcount == 1


class MySqlSession:
    def __init__(self, conn, clock: Callable[[], datetime] = datetime.now) -> None:
        self.conn = conn
        self.assignments = MySqlAssignmentStore(conn)
        self.reminders = MySqlReminderStore(conn)
        self.cases = MySqlCaseStore(conn)
        self.doctors = MySqlDoctorDirectory(conn, clock)


class MySqlStorage:
    """
    One connection per thread; sweeps running on different threads never share
    a connection. Every connection opened is tracked so `close` reaches the
    ones held by pool threads too.
    """

    def __init__(self, conn_factory: Callable[[], Any] = get_conn, clock: Callable[[], datetime] = datetime.now) -> None:
        self._conn_factory = conn_factory
        self._clock = clock
        self._local = threading.local()
        self._opened: List[Any] = []
        self._opened_lock = threading.Lock()

    def connection(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            try:
                if conn.is_connected():
                    return conn
            except mysql.connector.Error:
                pass
            self._forget(conn)
        conn = self._conn_factory()
        self._local.conn = conn
        with self._opened_lock:
            self._opened.append(conn)
        return conn

    def _forget(self, conn) -> None:
        with self._opened_lock:
            self._opened = [c for c in self._opened if c is not conn]
        safe_close(conn)

    @contextmanager
    def transaction(self) -> Iterator[MySqlSession]:
        conn = self.connection()
        with transaction(conn):
            yield MySqlSession(conn, self._clock)

    def close(self) -> None:
        """Close every connection this storage opened, on any thread."""
        with self._opened_lock:
            opened, self._opened = self._opened, []
        for conn in opened:
            safe_close(conn)
        self._local.conn = None
