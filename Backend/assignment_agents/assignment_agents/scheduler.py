# assignment_agents/scheduler.py
"""
Periodic supervision of PENDING case assignments.

Responsibilities:
  1. Expire PENDING assignments past their deadline (plus grace period)
  2. Put the case back in the unassigned pool
  3. Notify admins about each expiry
  4. Escalate cases that ran out of reassignment attempts
  5. Otherwise ask the matching service for a new doctor, with an exclusion set
  6. Send reminder notifications at configured checkpoints
  7. Housekeeping: old reminder rows, stale emergency mode

Every assignment is handled in its own transaction; one bad row never stops
the rest of a sweep. Notification and reassignment calls happen after commit
and are bounded by collaborator_timeout_seconds.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .config import SchedulerConfig, get_config, replace_config
from .errors import NotFoundError
from .events import TASK_CLEANUP, TASK_EMERGENCY_MODE, TASK_EXPIRATION, TASK_REMINDERS
from .exclusion import ExclusionPolicy
from .models import (
    ADMIN_ROLE,
    AssignmentStatus,
    CaseRecord,
    CaseStatus,
    ExpirationOutcome,
    NotificationKind,
    SchedulerStatistics,
    SweepReport,
)
from .reminders import TIME_FORMAT, ReminderTracker, build_reminder_message, format_time_remaining, reminder_window
from .state_machine import (
    expiration_cutoff,
    hours_remaining,
    is_eligible_for_expiration,
    timeout_hours,
    try_transition,
)
from .utils import call_with_timeout, now_dt
from .workload import WorkloadTracker

log = logging.getLogger(__name__)


class AssignmentScheduler:
    def __init__(
        self,
        storage,
        notifier,
        reassigner,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = now_dt,
        tracker: Optional[WorkloadTracker] = None,
    ) -> None:
        self.storage = storage
        self.notifier = notifier
        self.reassigner = reassigner
        self.config = config or get_config()
        self.clock = clock
        self.tracker = tracker or WorkloadTracker()

    def reload_config(self, new_config: SchedulerConfig) -> None:
        # sweeps already running keep the snapshot they started with
        self.config = replace_config(new_config)

    # ------------------------------------------------------------------
    # Expiration
    # ------------------------------------------------------------------
    def run_expiration_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        cfg = self.config
        report = SweepReport(task=TASK_EXPIRATION)
        if not cfg.scheduler_enabled:
            log.debug("Case assignment scheduler is disabled")
            report.details["disabled"] = True
            return report

        now = now or self.clock()
        cutoff = expiration_cutoff(now, cfg)
        with self.storage.transaction() as s:
            candidates = s.assignments.find_expired_pending(cutoff)

        if not candidates:
            log.debug("No expired assignments found")
            return report

        log.info("Found %s expired case assignments to process", len(candidates))
        outcomes: List[ExpirationOutcome] = []
        for assignment in candidates:
            try:
                outcome = self._expire(assignment.id, cfg, now, require_deadline=True)
            except NotFoundError as e:
                log.warning("Skipping assignment %s: %s", assignment.id, e)
                report.skipped += 1
                continue
            except Exception:
                log.exception("Error processing expired assignment %s", assignment.id)
                report.failed += 1
                continue
            if outcome.expired:
                report.processed += 1
            else:
                report.skipped += 1
            outcomes.append(outcome)

        report.details["outcomes"] = outcomes
        log.info(
            "Expiration sweep done processed=%s skipped=%s failed=%s",
            report.processed,
            report.skipped,
            report.failed,
        )
        return report

    def expire_assignment(self, assignment_id: int, now: Optional[datetime] = None) -> ExpirationOutcome:
        """
        Expire one PENDING assignment right away, deadline or not (manual
        replay). Already-terminal assignments are left untouched.
        """
        return self._expire(assignment_id, self.config, now or self.clock(), require_deadline=False)

    def _expire(self, assignment_id: int, cfg: SchedulerConfig, now: datetime, require_deadline: bool) -> ExpirationOutcome:
        with self.storage.transaction() as s:
            assignment = s.assignments.get(assignment_id, for_update=True)
            if assignment is None:
                raise NotFoundError(f"Assignment {assignment_id} not found")

            outcome = ExpirationOutcome(
                assignment_id=assignment.id,
                case_id=assignment.case_id,
                doctor_id=assignment.doctor_id,
                assignment=assignment,
            )
            if not assignment.is_pending:
                log.debug("Assignment %s already %s, nothing to do", assignment.id, assignment.status.value)
                return outcome
            if require_deadline and not is_eligible_for_expiration(assignment, cfg, now):
                return outcome

            case = s.cases.get(assignment.case_id, for_update=True)
            if case is None:
                raise NotFoundError(f"Assignment {assignment.id} references missing case {assignment.case_id}")

            log.info(
                "Processing expired assignment %s for case %s assigned to doctor %s",
                assignment.id,
                case.id,
                assignment.doctor_id,
            )
            target = try_transition(assignment.status, AssignmentStatus.EXPIRED)
            if not s.assignments.transition(
                assignment.id, expected=AssignmentStatus.PENDING, target=target, responded_at=now
            ):
                log.info("Assignment %s changed state concurrently, skipping", assignment.id)
                return outcome
            assignment.status = target
            assignment.responded_at = now
            outcome.expired = True

            outcome.case_reverted = s.cases.update_status(case.id, CaseStatus.PENDING, expected=CaseStatus.ASSIGNED)
            if outcome.case_reverted:
                log.info("Updated case %s status back to PENDING", case.id)

            try:
                self.tracker.on_released(s.doctors, assignment.doctor_id)
            except NotFoundError:
                log.warning("Doctor %s missing from directory; workload not released", assignment.doctor_id)

            outcome.expiration_count = s.assignments.count_by_case_and_status(case.id, AssignmentStatus.EXPIRED)
            outcome.escalated = outcome.expiration_count >= cfg.max_reassignment_attempts
            if not outcome.escalated:
                excluded = ExclusionPolicy(cfg).excluded_doctors(s.assignments, case.id, assignment.doctor_id, now)
                ranked = self.tracker.rank_candidates(s.doctors, case, excluded, limit=cfg.candidate_limit)
                outcome.excluded_doctor_ids = tuple(sorted(excluded))
                outcome.candidate_doctor_ids = tuple(c.doctor_id for c in ranked)

        # committed: everything below is fire-and-forget
        if cfg.notify_admin_on_expiration:
            self._notify_admin_expired(cfg, assignment, case, escalated=outcome.escalated)

        if outcome.escalated:
            log.warning(
                "Case %s has reached maximum reassignment attempts (%s). Manual intervention required.",
                case.id,
                cfg.max_reassignment_attempts,
            )
            self._notify_admin_escalation(cfg, case, outcome.expiration_count)
            return outcome

        outcome.reassignment_requested = self._request_reassignment(cfg, case, outcome)
        return outcome

    def _request_reassignment(self, cfg: SchedulerConfig, case: CaseRecord, outcome: ExpirationOutcome) -> bool:
        log.info(
            "Triggering reassignment for case %s (excluding %s doctors)",
            case.id,
            len(outcome.excluded_doctor_ids),
        )
        try:
            call_with_timeout(
                self.reassigner.request_reassignment,
                cfg.collaborator_timeout_seconds,
                case.id,
                outcome.excluded_doctor_ids,
                candidate_doctor_ids=outcome.candidate_doctor_ids,
                round_no=outcome.expiration_count,
            )
            return True
        except Exception as e:
            log.error("Failed to trigger reassignment for case %s: %s", case.id, e)
            return False

    def _emit(self, cfg: SchedulerConfig, kind: NotificationKind, payload: Dict[str, Any], **target: Any) -> bool:
        try:
            call_with_timeout(self.notifier.emit, cfg.collaborator_timeout_seconds, kind, payload=payload, **target)
            return True
        except Exception as e:
            log.error("Failed to emit %s notification: %s", kind.value, e)
            return False

    def _notify_admin_expired(self, cfg: SchedulerConfig, assignment, case: CaseRecord, escalated: bool = False) -> bool:
        next_step = (
            "Reassignment attempts are exhausted; the case needs manual assignment."
            if escalated
            else "The case is being automatically reassigned to another doctor."
        )
        message = (
            f"Case #{case.id} ('{case.title}') assignment to Doctor #{assignment.doctor_id} has expired "
            f"without response. Assignment was created at {assignment.assigned_at.strftime(TIME_FORMAT)} "
            f"and expired at {assignment.expires_at.strftime(TIME_FORMAT)}. "
            f"{next_step}"
        )
        return self._emit(
            cfg,
            NotificationKind.ASSIGNMENT_EXPIRED,
            {
                "title": "Case Assignment Expired",
                "message": message,
                "case_id": case.id,
                "assignment_id": assignment.id,
                "doctor_id": assignment.doctor_id,
                "assigned_at": assignment.assigned_at,
                "expires_at": assignment.expires_at,
                "escalated": escalated,
                "dedupe_key": f"assignment:{assignment.id}:expired",
            },
            role=ADMIN_ROLE,
        )

    def _notify_admin_escalation(self, cfg: SchedulerConfig, case: CaseRecord, expiration_count: int) -> bool:
        created = case.created_at.strftime(TIME_FORMAT) if case.created_at else "unknown"
        message = (
            f"Case #{case.id} ('{case.title}') has reached maximum reassignment attempts ({expiration_count}). "
            "Multiple doctors have not responded to this case assignment. "
            "Manual review and intervention is required. "
            f"Case details: Urgency={case.urgency_level.value}, "
            f"Specialization={case.required_specialization}, Created={created}"
        )
        return self._emit(
            cfg,
            NotificationKind.ASSIGNMENT_ESCALATION,
            {
                "title": "URGENT: Case Assignment Requires Manual Intervention",
                "message": message,
                "case_id": case.id,
                "expiration_count": expiration_count,
                "dedupe_key": f"case:{case.id}:escalation:{expiration_count}",
            },
            role=ADMIN_ROLE,
        )

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------
    def run_reminder_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        cfg = self.config
        report = SweepReport(task=TASK_REMINDERS)
        if not cfg.reminder_enabled:
            log.debug("Case assignment reminder system is disabled")
            report.details["disabled"] = True
            return report

        now = now or self.clock()
        sent: List[Dict[str, int]] = []
        for hour in cfg.reminder_hours_from_assignment:
            start, end = reminder_window(now, hour, cfg.check_interval_seconds)
            with self.storage.transaction() as s:
                due = s.assignments.find_pending_assigned_between(start, end)
            if not due:
                continue
            log.info("Found %s assignments needing %s-hour reminder", len(due), hour)

            for assignment in due:
                try:
                    if self._send_reminder(cfg, assignment.id, hour, now):
                        report.processed += 1
                        sent.append({"assignment_id": assignment.id, "reminder_hour": hour})
                    else:
                        report.skipped += 1
                except NotFoundError as e:
                    log.warning("Skipping reminder for assignment %s: %s", assignment.id, e)
                    report.skipped += 1
                except Exception:
                    log.exception("Failed to send reminder for assignment %s", assignment.id)
                    report.failed += 1

        report.details["sent"] = sent
        return report

    def _send_reminder(self, cfg: SchedulerConfig, assignment_id: int, hour: int, now: datetime) -> bool:
        with self.storage.transaction() as s:
            assignment = s.assignments.get(assignment_id)
            if assignment is None or not assignment.is_pending:
                return False
            if ReminderTracker(s.reminders).already_sent(assignment_id, hour):
                log.debug("Reminder already sent for assignment %s at %s hours", assignment_id, hour)
                return False
            case = s.cases.get(assignment.case_id)
            if case is None:
                raise NotFoundError(f"Assignment {assignment_id} references missing case {assignment.case_id}")

        timeout = timeout_hours(case.urgency_level, cfg)
        if hour not in cfg.reminder_hours_for(timeout):
            return False

        remaining = hours_remaining(case.urgency_level, hour, cfg)
        title, message = build_reminder_message(case, assignment, format_time_remaining(remaining))
        self._emit(
            cfg,
            NotificationKind.ASSIGNMENT_REMINDER,
            {
                "title": title,
                "message": message,
                "case_id": case.id,
                "case_title": case.title,
                "urgency": case.urgency_level.value,
                "assignment_id": assignment.id,
                "assigned_at": assignment.assigned_at,
                "expires_at": assignment.expires_at,
                "reminder_hour": hour,
                "hours_remaining": remaining,
                "dedupe_key": f"assignment:{assignment.id}:reminder:{hour}",
            },
            recipient_id=assignment.doctor_id,
        )

        # recorded after the send attempt: a crash in between re-sends at most once
        with self.storage.transaction() as s:
            recorded = ReminderTracker(s.reminders).record(assignment.id, hour, now, remaining)
        if recorded:
            log.info("Sent %s-hour reminder for assignment %s to doctor %s", hour, assignment.id, assignment.doctor_id)
        return recorded

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------
    def cleanup_old_reminders(self, now: Optional[datetime] = None) -> SweepReport:
        cfg = self.config
        report = SweepReport(task=TASK_CLEANUP)
        if not cfg.cleanup_enabled:
            report.details["disabled"] = True
            return report
        cutoff = (now or self.clock()) - timedelta(days=cfg.reminder_retention_days)
        with self.storage.transaction() as s:
            report.processed = s.reminders.delete_sent_before(cutoff)
        if report.processed:
            log.info("Cleaned up %s old reminder records", report.processed)
        return report

    def auto_disable_emergency_modes(self, now: Optional[datetime] = None) -> SweepReport:
        cfg = self.config
        report = SweepReport(task=TASK_EMERGENCY_MODE)
        if not cfg.emergency_mode_auto_disable:
            report.details["disabled"] = True
            return report
        cutoff = (now or self.clock()) - timedelta(hours=cfg.emergency_mode_max_hours)
        with self.storage.transaction() as s:
            stale = s.doctors.find_emergency_mode_enabled_before(cutoff)

        for doctor in stale:
            try:
                with self.storage.transaction() as s:
                    if s.doctors.disable_emergency_mode(doctor.doctor_id):
                        report.processed += 1
                        log.info(
                            "Auto-disabled emergency mode for doctor %s after %s hours",
                            doctor.doctor_id,
                            cfg.emergency_mode_max_hours,
                        )
            except Exception:
                log.exception("Failed to disable emergency mode for doctor %s", doctor.doctor_id)
                report.failed += 1
        return report

    def get_statistics(self, now: Optional[datetime] = None) -> SchedulerStatistics:
        cfg = self.config
        now = now or self.clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        with self.storage.transaction() as s:
            return SchedulerStatistics(
                total_pending_assignments=s.assignments.count_by_status(AssignmentStatus.PENDING),
                total_expired_assignments=s.assignments.count_by_status(AssignmentStatus.EXPIRED),
                expired_last_24_hours=s.assignments.count_by_status_responded_after(
                    AssignmentStatus.EXPIRED, now - timedelta(days=1)
                ),
                cases_requiring_manual_intervention=s.assignments.count_cases_with_expirations_at_least(
                    cfg.max_reassignment_attempts
                ),
                reminders_sent_today=s.reminders.count_sent_after(start_of_day),
                scheduler_enabled=cfg.scheduler_enabled,
                reminder_enabled=cfg.reminder_enabled,
                assignment_timeout_hours=cfg.assignment_timeout_hours,
            )
