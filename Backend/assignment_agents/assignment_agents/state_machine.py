# assignment_agents/state_machine.py
"""
Assignment lifecycle rules.

PENDING -> ACCEPTED | REJECTED | EXPIRED, all three terminal for the record.
Everything here is pure: no storage, no clock reads. Callers pass `now`.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, FrozenSet

from .config import SchedulerConfig
from .errors import IllegalTransitionError
from .models import AssignmentStatus, CaseAssignment, UrgencyLevel, norm_enum

LEGAL_TRANSITIONS: Dict[AssignmentStatus, FrozenSet[AssignmentStatus]] = {
    AssignmentStatus.PENDING: frozenset(
        {AssignmentStatus.ACCEPTED, AssignmentStatus.REJECTED, AssignmentStatus.EXPIRED}
    ),
    AssignmentStatus.ACCEPTED: frozenset(),
    AssignmentStatus.REJECTED: frozenset(),
    AssignmentStatus.EXPIRED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, nxt in LEGAL_TRANSITIONS.items() if not nxt)


def can_transition(current: AssignmentStatus, target: AssignmentStatus) -> bool:
    return target in LEGAL_TRANSITIONS.get(current, frozenset())


def try_transition(current: AssignmentStatus, target: AssignmentStatus) -> AssignmentStatus:
    """Return `target` if legal, else raise IllegalTransitionError."""
    current = norm_enum(AssignmentStatus, current)
    target = norm_enum(AssignmentStatus, target)
    if not can_transition(current, target):
        raise IllegalTransitionError(current, target)
    return target


def timeout_hours(urgency, config: SchedulerConfig) -> int:
    u = norm_enum(UrgencyLevel, urgency, default=UrgencyLevel.MEDIUM)
    if u.is_urgent:
        return config.critical_assignment_timeout_hours
    return config.assignment_timeout_hours


def compute_expires_at(assigned_at: datetime, urgency, config: SchedulerConfig) -> datetime:
    return assigned_at + timedelta(hours=timeout_hours(urgency, config))


def expiration_cutoff(now: datetime, config: SchedulerConfig) -> datetime:
    """Assignments whose expires_at is at or before this instant are past the grace period."""
    return now - timedelta(minutes=config.expiration_grace_period_minutes)


def is_eligible_for_expiration(assignment: CaseAssignment, config: SchedulerConfig, now: datetime) -> bool:
    if assignment.status != AssignmentStatus.PENDING:
        return False
    return expiration_cutoff(now, config) >= assignment.expires_at


def hours_remaining(urgency, reminder_hour: int, config: SchedulerConfig) -> int:
    return timeout_hours(urgency, config) - int(reminder_hour)
