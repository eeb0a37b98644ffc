# assignment_agents/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class AssignmentStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class AssignmentPriority(str, Enum):
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"
    BACKUP = "BACKUP"


class UrgencyLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def is_urgent(self) -> bool:
        return self in (UrgencyLevel.HIGH, UrgencyLevel.CRITICAL)


class CaseStatus(str, Enum):
    PENDING = "PENDING"  # awaiting assignment
    ASSIGNED = "ASSIGNED"  # offered to a doctor, no answer yet
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    CLOSED = "CLOSED"


class NotificationKind(str, Enum):
    ASSIGNMENT_EXPIRED = "ASSIGNMENT_EXPIRED"
    ASSIGNMENT_ESCALATION = "ASSIGNMENT_ESCALATION"
    ASSIGNMENT_REMINDER = "ASSIGNMENT_REMINDER"


ADMIN_ROLE = "Admin"


def norm_enum(enum_cls, value: Any, default=None):
    """'in progress' / 'in-progress' / 'IN_PROGRESS' -> CaseStatus.IN_PROGRESS"""
    if isinstance(value, enum_cls):
        return value
    s = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
    try:
        return enum_cls(s)
    except ValueError:
        if default is not None:
            return default
        raise


@dataclass
class CaseRecord:
    id: int
    title: str
    status: CaseStatus = CaseStatus.PENDING
    urgency_level: UrgencyLevel = UrgencyLevel.MEDIUM
    required_specialization: Optional[str] = None
    secondary_specializations: Tuple[str, ...] = ()
    created_at: Optional[datetime] = None


@dataclass
class CaseAssignment:
    id: int
    case_id: int
    doctor_id: int
    status: AssignmentStatus
    priority: AssignmentPriority
    assigned_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime] = None
    assignment_reason: str = ""
    rejection_reason: Optional[str] = None
    matching_score: float = 0.0

    @property
    def is_pending(self) -> bool:
        return self.status == AssignmentStatus.PENDING


@dataclass
class CaseAssignmentReminder:
    assignment_id: int
    reminder_hour: int
    sent_at: datetime
    hours_remaining: int
    id: Optional[int] = None


@dataclass
class DoctorWorkloadSnapshot:
    doctor_id: int
    is_available: bool = True
    active_cases: int = 0
    max_active_cases: int = 10
    today_appointments: int = 0
    max_daily_appointments: int = 8
    average_rating: Optional[float] = None
    emergency_mode: bool = False
    emergency_mode_enabled_at: Optional[datetime] = None
    primary_specialization: Optional[str] = None
    sub_specializations: Tuple[str, ...] = ()

    @property
    def has_case_capacity(self) -> bool:
        return self.active_cases < self.max_active_cases

    @property
    def workload_percentage(self) -> float:
        case_load = (self.active_cases / self.max_active_cases * 50.0) if self.max_active_cases > 0 else 50.0
        appt_load = (
            (self.today_appointments / self.max_daily_appointments * 50.0)
            if self.max_daily_appointments > 0
            else 50.0
        )
        return min(100.0, case_load + appt_load)


@dataclass
class ExpirationOutcome:
    """What the expiration sweep did with one assignment."""

    assignment_id: int
    case_id: int
    doctor_id: int
    expired: bool = False
    case_reverted: bool = False
    expiration_count: int = 0
    escalated: bool = False
    reassignment_requested: bool = False
    excluded_doctor_ids: Tuple[int, ...] = ()
    candidate_doctor_ids: Tuple[int, ...] = ()
    assignment: Optional[CaseAssignment] = None


@dataclass
class SweepReport:
    task: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SchedulerStatistics:
    total_pending_assignments: int = 0
    total_expired_assignments: int = 0
    expired_last_24_hours: int = 0
    cases_requiring_manual_intervention: int = 0
    reminders_sent_today: int = 0
    scheduler_enabled: bool = True
    reminder_enabled: bool = True
    assignment_timeout_hours: int = 24
