# assignment_agents/memory.py
"""
In-process storage with the same contract as repositories.MySqlStorage.

Used for dry runs, replay and tests. One re-entrant lock serialises
transactions, which stands in for the row locks MySQL takes; a failed
transaction restores the state captured when it began.
"""
from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .errors import AssignmentConflictError, NotFoundError
from .models import (
    AssignmentPriority,
    AssignmentStatus,
    CaseAssignment,
    CaseAssignmentReminder,
    CaseRecord,
    CaseStatus,
    DoctorWorkloadSnapshot,
)


class _State:
    def __init__(self) -> None:
        self.assignments: Dict[int, CaseAssignment] = {}
        self.reminders: Dict[Tuple[int, int], CaseAssignmentReminder] = {}
        self.cases: Dict[int, CaseRecord] = {}
        self.doctors: Dict[int, DoctorWorkloadSnapshot] = {}
        self.last_assignment_id = 0
        self.last_reminder_id = 0

    def next_assignment_id(self) -> int:
        self.last_assignment_id += 1
        return self.last_assignment_id

    def next_reminder_id(self) -> int:
        self.last_reminder_id += 1
        return self.last_reminder_id


class MemoryAssignmentStore:
    def __init__(self, state: _State) -> None:
        self._s = state

    def get(self, assignment_id: int, for_update: bool = False) -> Optional[CaseAssignment]:
        a = self._s.assignments.get(int(assignment_id))
        return replace(a) if a else None

    def find_pending_for_case(self, case_id: int) -> Optional[CaseAssignment]:
        for a in self._s.assignments.values():
            if a.case_id == case_id and a.status == AssignmentStatus.PENDING:
                return replace(a)
        return None

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
        pending = self.find_pending_for_case(case_id)
        if pending:
            raise AssignmentConflictError(case_id, pending.id)
        a = CaseAssignment(
            id=self._s.next_assignment_id(),
            case_id=case_id,
            doctor_id=doctor_id,
            status=AssignmentStatus.PENDING,
            priority=priority,
            assigned_at=assigned_at,
            expires_at=expires_at,
            assignment_reason=reason,
            matching_score=matching_score,
        )
        self._s.assignments[a.id] = a
        return replace(a)

    def transition(
        self,
        assignment_id: int,
        *,
        expected: AssignmentStatus,
        target: AssignmentStatus,
        responded_at: datetime,
        rejection_reason: Optional[str] = None,
    ) -> bool:
        a = self._s.assignments.get(int(assignment_id))
        if a is None or a.status != expected:
            return False
        a.status = target
        a.responded_at = responded_at
        if rejection_reason is not None:
            a.rejection_reason = rejection_reason
        return True

    def find_expired_pending(self, cutoff: datetime) -> List[CaseAssignment]:
        rows = [
            replace(a)
            for a in self._s.assignments.values()
            if a.status == AssignmentStatus.PENDING and a.expires_at <= cutoff
        ]
        return sorted(rows, key=lambda a: (a.expires_at, a.id))

    def find_pending_assigned_between(self, start: datetime, end: datetime) -> List[CaseAssignment]:
        rows = [
            replace(a)
            for a in self._s.assignments.values()
            if a.status == AssignmentStatus.PENDING and start <= a.assigned_at <= end
        ]
        return sorted(rows, key=lambda a: a.id)

    def count_by_case_and_status(self, case_id: int, status: AssignmentStatus) -> int:
        return sum(1 for a in self._s.assignments.values() if a.case_id == case_id and a.status == status)

    def doctor_ids_by_case_and_status(self, case_id: int, status: AssignmentStatus) -> Set[int]:
        return {a.doctor_id for a in self._s.assignments.values() if a.case_id == case_id and a.status == status}

    def exists_expired_since(self, case_id: int, doctor_id: int, since: datetime) -> bool:
        return any(
            a.case_id == case_id
            and a.doctor_id == doctor_id
            and a.status == AssignmentStatus.EXPIRED
            and a.responded_at is not None
            and a.responded_at > since
            for a in self._s.assignments.values()
        )

    def count_by_status(self, status: AssignmentStatus) -> int:
        return sum(1 for a in self._s.assignments.values() if a.status == status)

    def count_by_status_responded_after(self, status: AssignmentStatus, since: datetime) -> int:
        return sum(
            1
            for a in self._s.assignments.values()
            if a.status == status and a.responded_at is not None and a.responded_at > since
        )

    def count_cases_with_expirations_at_least(self, threshold: int) -> int:
        per_case: Dict[int, int] = {}
        for a in self._s.assignments.values():
            if a.status == AssignmentStatus.EXPIRED:
                per_case[a.case_id] = per_case.get(a.case_id, 0) + 1
        return sum(1 for n in per_case.values() if n >= threshold)

    def all_for_case(self, case_id: int) -> List[CaseAssignment]:
        return [replace(a) for a in self._s.assignments.values() if a.case_id == case_id]


class MemoryReminderStore:
    def __init__(self, state: _State) -> None:
        self._s = state

    def exists(self, assignment_id: int, reminder_hour: int) -> bool:
        return (int(assignment_id), int(reminder_hour)) in self._s.reminders

    def record(self, reminder: CaseAssignmentReminder) -> bool:
        key = (int(reminder.assignment_id), int(reminder.reminder_hour))
        if key in self._s.reminders:
            return False
        self._s.reminders[key] = replace(reminder, id=self._s.next_reminder_id())
        return True

    def delete_sent_before(self, cutoff: datetime) -> int:
        stale = [k for k, r in self._s.reminders.items() if r.sent_at < cutoff]
        for k in stale:
            del self._s.reminders[k]
        return len(stale)

    def count_sent_after(self, since: datetime) -> int:
        return sum(1 for r in self._s.reminders.values() if r.sent_at > since)

    def for_assignment(self, assignment_id: int) -> List[CaseAssignmentReminder]:
        return sorted(
            (replace(r) for (aid, _), r in self._s.reminders.items() if aid == assignment_id),
            key=lambda r: r.reminder_hour,
        )


class MemoryCaseStore:
    def __init__(self, state: _State) -> None:
        self._s = state

    def get(self, case_id: int, for_update: bool = False) -> Optional[CaseRecord]:
        c = self._s.cases.get(int(case_id))
        return replace(c) if c else None

    def update_status(self, case_id: int, status: CaseStatus, expected: Optional[CaseStatus] = None) -> bool:
        c = self._s.cases.get(int(case_id))
        if c is None:
            return False
        if expected is not None and c.status != expected:
            return False
        c.status = status
        return True


class MemoryDoctorDirectory:
    def __init__(self, state: _State) -> None:
        self._s = state

    def get_workload_snapshot(self, doctor_id: int) -> Optional[DoctorWorkloadSnapshot]:
        d = self._s.doctors.get(int(doctor_id))
        return replace(d) if d else None

    def adjust_workload(self, doctor_id: int, delta: int) -> None:
        d = self._s.doctors.get(int(doctor_id))
        if d is None:
            raise NotFoundError(f"Doctor {doctor_id} not found")
        d.active_cases = max(0, d.active_cases + int(delta))
        d.today_appointments = max(0, d.today_appointments + int(delta))

    def list_by_specializations(self, specializations: Iterable[str]) -> List[DoctorWorkloadSnapshot]:
        wanted = {s for s in specializations if s}
        out = []
        for d in self._s.doctors.values():
            if not wanted or d.primary_specialization in wanted or wanted.intersection(d.sub_specializations):
                out.append(replace(d))
        return sorted(out, key=lambda d: d.doctor_id)

    def find_emergency_mode_enabled_before(self, cutoff: datetime) -> List[DoctorWorkloadSnapshot]:
        return [
            replace(d)
            for d in self._s.doctors.values()
            if d.emergency_mode and d.emergency_mode_enabled_at is not None and d.emergency_mode_enabled_at < cutoff
        ]

    def disable_emergency_mode(self, doctor_id: int) -> bool:
        d = self._s.doctors.get(int(doctor_id))
        if d is None or not d.emergency_mode:
            return False
        d.emergency_mode = False
        d.emergency_mode_enabled_at = None
        return True


class MemorySession:
    def __init__(self, state: _State) -> None:
        self.assignments = MemoryAssignmentStore(state)
        self.reminders = MemoryReminderStore(state)
        self.cases = MemoryCaseStore(state)
        self.doctors = MemoryDoctorDirectory(state)


class MemoryStorage:
    def __init__(self) -> None:
        self._state = _State()
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[MemorySession]:
        with self._lock:
            saved = copy.deepcopy(self._state.__dict__)
            try:
                yield MemorySession(self._state)
            except BaseException:
                self._state.__dict__.clear()
                self._state.__dict__.update(saved)
                raise

    # seeding helpers
    def add_case(self, case: CaseRecord) -> CaseRecord:
        with self._lock:
            self._state.cases[case.id] = replace(case)
        return case

    def add_doctor(self, doctor: DoctorWorkloadSnapshot) -> DoctorWorkloadSnapshot:
        with self._lock:
            self._state.doctors[doctor.doctor_id] = replace(doctor)
        return doctor

    def remove_case(self, case_id: int) -> None:
        with self._lock:
            self._state.cases.pop(int(case_id), None)


class MemoryNotifier:
    """Notification sink that keeps what it was asked to send."""

    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.fail_with: Optional[BaseException] = None
        self._lock = threading.Lock()

    def emit(self, kind, *, recipient_id: Optional[int] = None, role: Optional[str] = None, payload: dict) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            self.sent.append({"kind": kind, "recipient_id": recipient_id, "role": role, "payload": dict(payload)})

    def of_kind(self, kind) -> List[dict]:
        return [n for n in self.sent if n["kind"] == kind]


class MemoryReassigner:
    """RequestReassignment collaborator that records each request."""

    def __init__(self) -> None:
        self.requests: List[dict] = []
        self.fail_with: Optional[BaseException] = None
        self._lock = threading.Lock()

    def request_reassignment(
        self,
        case_id: int,
        excluded_doctor_ids: Iterable[int],
        *,
        candidate_doctor_ids: Iterable[int] = (),
        round_no: int = 0,
    ) -> int:
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            self.requests.append(
                {
                    "case_id": case_id,
                    "excluded_doctor_ids": frozenset(excluded_doctor_ids),
                    "candidate_doctor_ids": tuple(candidate_doctor_ids),
                    "round": round_no,
                }
            )
            return len(self.requests)
