"""
Tests for which doctors are barred from the next reassignment round
"""

from datetime import timedelta

from assignment_agents.exclusion import ExclusionPolicy

from conftest import T0, make_config


def _expire_for(service, scheduler, doctor_id, at):
    a = service.create_assignment(1, doctor_id, now=at)
    scheduler.expire_assignment(a.id, now=at + timedelta(hours=1))
    return at + timedelta(hours=1)


class TestNoSameDoctor:
    def test_all_expired_doctors_excluded(self, storage, service, scheduler):
        _expire_for(service, scheduler, 10, T0)
        _expire_for(service, scheduler, 12, T0 + timedelta(hours=2))
        policy = ExclusionPolicy(make_config(can_reassign_to_same_doctor=False))
        with storage.transaction() as s:
            excluded = policy.excluded_doctors(s.assignments, 1, 12, T0 + timedelta(days=30))
        assert excluded == {10, 12}

    def test_rejected_doctor_not_excluded(self, storage, service):
        a = service.create_assignment(1, 10, now=T0)
        service.reject_assignment(a.id, "on leave", now=T0 + timedelta(minutes=5))
        policy = ExclusionPolicy(make_config())
        with storage.transaction() as s:
            assert policy.excluded_doctors(s.assignments, 1, 10, T0 + timedelta(hours=1)) == frozenset()


class TestCooldown:
    def test_inside_and_after_cooldown(self, storage, service, scheduler):
        expired_at = _expire_for(service, scheduler, 10, T0)
        policy = ExclusionPolicy(make_config(can_reassign_to_same_doctor=True, reassignment_cooldown_hours=24))
        with storage.transaction() as s:
            assert policy.excluded_doctors(s.assignments, 1, 10, expired_at + timedelta(hours=1)) == {10}
            assert policy.excluded_doctors(s.assignments, 1, 10, expired_at + timedelta(hours=25)) == frozenset()

    def test_only_the_doctor_who_just_expired(self, storage, service, scheduler):
        _expire_for(service, scheduler, 12, T0)
        expired_at = _expire_for(service, scheduler, 10, T0 + timedelta(hours=2))
        policy = ExclusionPolicy(make_config(can_reassign_to_same_doctor=True))
        with storage.transaction() as s:
            assert policy.excluded_doctors(s.assignments, 1, 10, expired_at + timedelta(hours=1)) == {10}
