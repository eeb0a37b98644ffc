"""
Tests for the expiration sweep: deadlines, case revert, admin notification,
escalation and reassignment requests
"""

import threading
from datetime import timedelta

import pytest

from assignment_agents.errors import NotFoundError
from assignment_agents.models import ADMIN_ROLE, AssignmentStatus, CaseStatus, NotificationKind

from conftest import T0, get_assignment, get_case, get_doctor, make_config

DEADLINE = T0 + timedelta(hours=24)


class TestMediumCaseLifecycle:
    def test_not_expired_inside_grace(self, service, scheduler, storage, notifier):
        a = service.create_assignment(1, 10, now=T0)
        report = scheduler.run_expiration_sweep(now=DEADLINE + timedelta(minutes=4))
        assert report.processed == 0
        assert get_assignment(storage, a.id).status == AssignmentStatus.PENDING
        assert notifier.sent == []

    def test_expired_after_grace(self, service, scheduler, storage, notifier, reassigner):
        a = service.create_assignment(1, 10, now=T0)
        assert get_case(storage, 1).status == CaseStatus.ASSIGNED
        assert get_doctor(storage, 10).active_cases == 3

        now = DEADLINE + timedelta(minutes=5)
        report = scheduler.run_expiration_sweep(now=now)

        assert report.processed == 1
        stored = get_assignment(storage, a.id)
        assert stored.status == AssignmentStatus.EXPIRED
        assert stored.responded_at == now
        assert get_case(storage, 1).status == CaseStatus.PENDING
        assert get_doctor(storage, 10).active_cases == 2
        assert get_doctor(storage, 10).today_appointments == 1

        expired = notifier.of_kind(NotificationKind.ASSIGNMENT_EXPIRED)
        assert len(expired) == 1
        assert expired[0]["role"] == ADMIN_ROLE
        assert expired[0]["payload"]["case_id"] == 1
        assert "Crown prep review" in expired[0]["payload"]["message"]
        assert "automatically reassigned" in expired[0]["payload"]["message"]

        assert len(reassigner.requests) == 1
        req = reassigner.requests[0]
        assert req["case_id"] == 1
        assert req["excluded_doctor_ids"] == {10}
        assert req["round"] == 1
        assert 10 not in req["candidate_doctor_ids"]
        assert req["candidate_doctor_ids"] == (12, 11)

    def test_critical_case_expires_after_four_hours(self, service, scheduler, storage):
        a = service.create_assignment(2, 10, now=T0)
        assert a.expires_at == T0 + timedelta(hours=4)
        scheduler.run_expiration_sweep(now=T0 + timedelta(hours=4, minutes=5))
        assert get_assignment(storage, a.id).status == AssignmentStatus.EXPIRED

    def test_admin_notification_can_be_disabled(self, service, scheduler, notifier, reassigner):
        scheduler.config = make_config(notify_admin_on_expiration=False)
        service.create_assignment(1, 10, now=T0)
        scheduler.run_expiration_sweep(now=DEADLINE + timedelta(minutes=5))
        assert notifier.sent == []
        assert len(reassigner.requests) == 1


class TestIdempotency:
    def test_second_sweep_is_noop(self, service, scheduler, notifier, reassigner):
        service.create_assignment(1, 10, now=T0)
        now = DEADLINE + timedelta(minutes=5)
        scheduler.run_expiration_sweep(now=now)
        report = scheduler.run_expiration_sweep(now=now)
        assert report.processed == 0
        assert len(notifier.sent) == 1
        assert len(reassigner.requests) == 1

    def test_replay_on_terminal_assignment(self, service, scheduler, notifier):
        a = service.create_assignment(1, 10, now=T0)
        service.accept_assignment(a.id, now=T0 + timedelta(hours=1))
        outcome = scheduler.expire_assignment(a.id, now=DEADLINE + timedelta(hours=1))
        assert outcome.expired is False
        assert outcome.assignment.status == AssignmentStatus.ACCEPTED
        assert notifier.sent == []

    def test_unknown_assignment(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.expire_assignment(404)

    def test_concurrent_expiry_only_once(self, service, scheduler, notifier, reassigner):
        a = service.create_assignment(1, 10, now=T0)
        now = DEADLINE + timedelta(minutes=5)
        outcomes = []
        threads = [
            threading.Thread(target=lambda: outcomes.append(scheduler.expire_assignment(a.id, now=now)))
            for _ in range(6)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sum(1 for o in outcomes if o.expired) == 1
        assert len(notifier.sent) == 1
        assert len(reassigner.requests) == 1


class TestEscalation:
    def _expire_round(self, service, scheduler, doctor_id, start):
        service.create_assignment(1, doctor_id, now=start)
        report = scheduler.run_expiration_sweep(now=start + timedelta(hours=24, minutes=5))
        return report.details["outcomes"][0]

    def test_third_expiry_escalates(self, service, scheduler, notifier, reassigner, storage):
        first = self._expire_round(service, scheduler, 10, T0)
        second = self._expire_round(service, scheduler, 11, T0 + timedelta(days=2))
        assert not first.escalated and not second.escalated
        assert reassigner.requests[1]["excluded_doctor_ids"] == {10, 11}
        assert reassigner.requests[1]["round"] == 2

        third = self._expire_round(service, scheduler, 12, T0 + timedelta(days=4))
        assert third.escalated
        assert third.expiration_count == 3
        assert not third.reassignment_requested
        assert len(reassigner.requests) == 2

        escalations = notifier.of_kind(NotificationKind.ASSIGNMENT_ESCALATION)
        assert len(escalations) == 1
        assert escalations[0]["role"] == ADMIN_ROLE
        assert escalations[0]["payload"]["expiration_count"] == 3
        assert get_case(storage, 1).status == CaseStatus.PENDING

    def test_final_expiry_notice_does_not_promise_reassignment(self, service, scheduler, notifier):
        for i, doctor_id in enumerate((10, 11, 12)):
            self._expire_round(service, scheduler, doctor_id, T0 + timedelta(days=2 * i))

        notices = notifier.of_kind(NotificationKind.ASSIGNMENT_EXPIRED)
        assert [n["payload"]["escalated"] for n in notices] == [False, False, True]
        assert "automatically reassigned" in notices[1]["payload"]["message"]
        assert "automatically reassigned" not in notices[2]["payload"]["message"]
        assert "manual assignment" in notices[2]["payload"]["message"]

    def test_same_doctor_expiries_count_toward_global_limit(self, service, scheduler, reassigner, notifier):
        scheduler.config = make_config(can_reassign_to_same_doctor=True, reassignment_cooldown_hours=0)
        outcomes = [
            self._expire_round(service, scheduler, 10, T0 + timedelta(days=2 * i)) for i in range(3)
        ]
        assert [o.escalated for o in outcomes] == [False, False, True]
        assert [o.expiration_count for o in outcomes] == [1, 2, 3]
        # cooldown of zero: the doctor is immediately eligible again
        assert all(r["excluded_doctor_ids"] == frozenset() for r in reassigner.requests)
        assert len(notifier.of_kind(NotificationKind.ASSIGNMENT_ESCALATION)) == 1

    def test_statistics_flag_manual_intervention(self, service, scheduler):
        for i, doctor_id in enumerate((10, 11, 12)):
            self._expire_round(service, scheduler, doctor_id, T0 + timedelta(days=2 * i))
        stats = scheduler.get_statistics(now=T0 + timedelta(days=5, hours=1))
        assert stats.cases_requiring_manual_intervention == 1
        assert stats.total_expired_assignments == 3
        assert stats.total_pending_assignments == 0


class TestFailureIsolation:
    def test_reassigner_failure_keeps_expiry(self, service, scheduler, reassigner, storage, notifier):
        reassigner.fail_with = RuntimeError("matching service down")
        a = service.create_assignment(1, 10, now=T0)
        report = scheduler.run_expiration_sweep(now=DEADLINE + timedelta(minutes=5))
        outcome = report.details["outcomes"][0]
        assert report.processed == 1
        assert outcome.expired and not outcome.reassignment_requested
        assert get_assignment(storage, a.id).status == AssignmentStatus.EXPIRED
        assert len(notifier.sent) == 1

    def test_notifier_failure_keeps_expiry(self, service, scheduler, notifier, reassigner, storage):
        notifier.fail_with = RuntimeError("smtp down")
        a = service.create_assignment(1, 10, now=T0)
        scheduler.run_expiration_sweep(now=DEADLINE + timedelta(minutes=5))
        assert get_assignment(storage, a.id).status == AssignmentStatus.EXPIRED
        assert len(reassigner.requests) == 1

    def test_slow_notifier_is_cut_off(self, service, scheduler, storage, reassigner):
        release = threading.Event()

        class SlowNotifier:
            def emit(self, kind, **kwargs):
                release.wait(10)

        scheduler.notifier = SlowNotifier()
        scheduler.config = make_config(collaborator_timeout_seconds=1)
        try:
            a = service.create_assignment(1, 10, now=T0)
            scheduler.run_expiration_sweep(now=DEADLINE + timedelta(minutes=5))
            assert get_assignment(storage, a.id).status == AssignmentStatus.EXPIRED
            assert len(reassigner.requests) == 1
        finally:
            release.set()

    def test_missing_case_is_skipped(self, service, scheduler, storage):
        a = service.create_assignment(1, 10, now=T0)
        service.create_assignment(2, 11, now=T0)
        storage.remove_case(1)
        report = scheduler.run_expiration_sweep(now=DEADLINE + timedelta(minutes=5))
        assert report.skipped == 1
        assert report.processed == 1
        assert get_assignment(storage, a.id).status == AssignmentStatus.PENDING

    def test_disabled_scheduler_does_nothing(self, service, scheduler, storage):
        scheduler.config = make_config(scheduler_enabled=False)
        a = service.create_assignment(1, 10, now=T0)
        report = scheduler.run_expiration_sweep(now=DEADLINE + timedelta(days=1))
        assert report.details["disabled"] is True
        assert get_assignment(storage, a.id).status == AssignmentStatus.PENDING
