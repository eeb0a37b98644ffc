# assignment_agents/assignments.py
"""
Doctor-facing side of the assignment lifecycle: offer a case, accept,
reject, and close an accepted case. The scheduler owns the EXPIRED path.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from .config import SchedulerConfig, get_config
from .errors import IllegalTransitionError, NotFoundError
from .models import AssignmentPriority, AssignmentStatus, CaseAssignment, CaseStatus
from .state_machine import compute_expires_at, try_transition
from .utils import now_dt
from .workload import WorkloadTracker

log = logging.getLogger(__name__)


class AssignmentService:
    def __init__(
        self,
        storage,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = now_dt,
        tracker: Optional[WorkloadTracker] = None,
    ) -> None:
        self.storage = storage
        self.config = config or get_config()
        self.clock = clock
        self.tracker = tracker or WorkloadTracker()

    def create_assignment(
        self,
        case_id: int,
        doctor_id: int,
        *,
        priority: AssignmentPriority = AssignmentPriority.PRIMARY,
        reason: str = "",
        matching_score: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> CaseAssignment:
        """
        Offer `case_id` to `doctor_id`. Raises AssignmentConflictError when the
        case already has a PENDING assignment.
        """
        now = now or self.clock()
        with self.storage.transaction() as s:
            case = s.cases.get(case_id, for_update=True)
            if case is None:
                raise NotFoundError(f"Case {case_id} not found")
            if s.doctors.get_workload_snapshot(doctor_id) is None:
                raise NotFoundError(f"Doctor {doctor_id} not found")

            if matching_score is None:
                matching_score = self.tracker.score_for(s.doctors, case, doctor_id) or 0.0

            assignment = s.assignments.create(
                case_id=case.id,
                doctor_id=doctor_id,
                priority=priority,
                assigned_at=now,
                expires_at=compute_expires_at(now, case.urgency_level, self.config),
                reason=reason,
                matching_score=matching_score,
            )
            s.cases.update_status(case.id, CaseStatus.ASSIGNED)
            self.tracker.on_assigned(s.doctors, doctor_id)

        log.info(
            "Assigned case %s to doctor %s assignment=%s expires_at=%s",
            case_id,
            doctor_id,
            assignment.id,
            assignment.expires_at,
        )
        return assignment

    def _respond(
        self,
        assignment_id: int,
        target: AssignmentStatus,
        now: Optional[datetime],
        rejection_reason: Optional[str] = None,
    ) -> CaseAssignment:
        now = now or self.clock()
        with self.storage.transaction() as s:
            assignment = s.assignments.get(assignment_id, for_update=True)
            if assignment is None:
                raise NotFoundError(f"Assignment {assignment_id} not found")
            target = try_transition(assignment.status, target)
            if not s.assignments.transition(
                assignment.id,
                expected=AssignmentStatus.PENDING,
                target=target,
                responded_at=now,
                rejection_reason=rejection_reason,
            ):
                raise IllegalTransitionError(assignment.status, target)

            if target == AssignmentStatus.ACCEPTED:
                s.cases.update_status(assignment.case_id, CaseStatus.ACCEPTED, expected=CaseStatus.ASSIGNED)
            else:
                s.cases.update_status(assignment.case_id, CaseStatus.PENDING, expected=CaseStatus.ASSIGNED)
                self.tracker.on_released(s.doctors, assignment.doctor_id)

            assignment.status = target
            assignment.responded_at = now
            if rejection_reason is not None:
                assignment.rejection_reason = rejection_reason

        log.info("Assignment %s %s by doctor %s", assignment.id, target.value, assignment.doctor_id)
        return assignment

    def accept_assignment(self, assignment_id: int, now: Optional[datetime] = None) -> CaseAssignment:
        return self._respond(assignment_id, AssignmentStatus.ACCEPTED, now)

    def reject_assignment(
        self, assignment_id: int, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> CaseAssignment:
        return self._respond(assignment_id, AssignmentStatus.REJECTED, now, rejection_reason=reason or "")

    def close_case_assignment(self, assignment_id: int) -> CaseAssignment:
        """Close the case behind an ACCEPTED assignment and free the doctor's slot."""
        with self.storage.transaction() as s:
            assignment = s.assignments.get(assignment_id, for_update=True)
            if assignment is None:
                raise NotFoundError(f"Assignment {assignment_id} not found")
            if assignment.status != AssignmentStatus.ACCEPTED:
                raise IllegalTransitionError(assignment.status, AssignmentStatus.ACCEPTED)
            if s.cases.get(assignment.case_id, for_update=True) is None:
                raise NotFoundError(f"Case {assignment.case_id} not found")
            s.cases.update_status(assignment.case_id, CaseStatus.CLOSED)
            self.tracker.on_released(s.doctors, assignment.doctor_id)

        log.info("Case %s closed by doctor %s", assignment.case_id, assignment.doctor_id)
        return assignment
