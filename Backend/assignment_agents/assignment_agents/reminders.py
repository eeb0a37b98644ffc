# assignment_agents/reminders.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Tuple

from .models import CaseAssignment, CaseAssignmentReminder, CaseRecord

TIME_FORMAT = "%b %d, %Y %H:%M"


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}" if n == 1 else f"{n} {unit}s"


def format_time_remaining(hours: int) -> str:
    """
    1 -> "1 hour", 12 -> "12 hours", 24 -> "1 day", 50 -> "2 days and 2 hours"
    """
    hours = int(hours)
    if hours < 24:
        return _plural(hours, "hour")
    days, rem = divmod(hours, 24)
    if rem == 0:
        return _plural(days, "day")
    return f"{_plural(days, 'day')} and {_plural(rem, 'hour')}"


def reminder_window(now: datetime, reminder_hour: int, check_interval_seconds: int) -> Tuple[datetime, datetime]:
    """
    assigned_at range whose `reminder_hour` checkpoint falls within this run.
    One full interval on each side, so runs that start late still overlap their
    neighbours. Overlap is absorbed by the unique (assignment, hour) reminder row.
    """
    target = now - timedelta(hours=int(reminder_hour))
    eps = timedelta(seconds=check_interval_seconds)
    return target - eps, target + eps


def build_reminder_message(case: CaseRecord, assignment: CaseAssignment, time_remaining: str) -> Tuple[str, str]:
    title = "Case Assignment Reminder"
    message = (
        f"REMINDER: You have {time_remaining} to accept the case assignment.\n\n"
        f"Case: {case.title}\n"
        f"Urgency: {case.urgency_level.value}\n"
        f"Assigned: {assignment.assigned_at.strftime(TIME_FORMAT)}\n"
        f"Expires: {assignment.expires_at.strftime(TIME_FORMAT)}\n\n"
        "If not accepted, this case will be reassigned to another doctor."
    )
    return title, message


class ReminderTracker:
    """Which checkpoints already fired, per assignment."""

    def __init__(self, reminders) -> None:
        self._reminders = reminders

    def already_sent(self, assignment_id: int, reminder_hour: int) -> bool:
        return self._reminders.exists(assignment_id, reminder_hour)

    def record(self, assignment_id: int, reminder_hour: int, sent_at: datetime, hours_remaining: int) -> bool:
        """False when the checkpoint was recorded by someone else first."""
        return self._reminders.record(
            CaseAssignmentReminder(
                assignment_id=assignment_id,
                reminder_hour=reminder_hour,
                sent_at=sent_at,
                hours_remaining=hours_remaining,
            )
        )
