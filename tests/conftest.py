from datetime import datetime, timedelta

import pytest

from assignment_agents.assignments import AssignmentService
from assignment_agents.config import SchedulerConfig
from assignment_agents.memory import MemoryNotifier, MemoryReassigner, MemoryStorage
from assignment_agents.models import CaseRecord, DoctorWorkloadSnapshot, UrgencyLevel
from assignment_agents.scheduler import AssignmentScheduler

T0 = datetime(2026, 3, 2, 9, 0, 0)

PROSTHO = "Prosthodontics"
ENDO = "Endodontics"


def make_config(**overrides) -> SchedulerConfig:
    base = dict(check_interval_seconds=300, collaborator_timeout_seconds=2)
    base.update(overrides)
    return SchedulerConfig(**base)


class Clock:
    """Settable clock; every component reads time through it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def seed(storage: MemoryStorage) -> MemoryStorage:
    storage.add_case(
        CaseRecord(
            id=1,
            title="Crown prep review",
            urgency_level=UrgencyLevel.MEDIUM,
            required_specialization=PROSTHO,
            created_at=T0 - timedelta(hours=1),
        )
    )
    storage.add_case(
        CaseRecord(
            id=2,
            title="Facial swelling",
            urgency_level=UrgencyLevel.CRITICAL,
            required_specialization=PROSTHO,
            created_at=T0 - timedelta(hours=1),
        )
    )
    storage.add_doctor(
        DoctorWorkloadSnapshot(
            doctor_id=10,
            active_cases=2,
            today_appointments=1,
            average_rating=4.5,
            primary_specialization=PROSTHO,
        )
    )
    storage.add_doctor(
        DoctorWorkloadSnapshot(
            doctor_id=11,
            active_cases=8,
            today_appointments=7,
            average_rating=5.0,
            primary_specialization=PROSTHO,
        )
    )
    storage.add_doctor(
        DoctorWorkloadSnapshot(
            doctor_id=12,
            average_rating=4.0,
            primary_specialization=ENDO,
            sub_specializations=(PROSTHO,),
        )
    )
    storage.add_doctor(
        DoctorWorkloadSnapshot(
            doctor_id=13,
            is_available=False,
            primary_specialization=PROSTHO,
        )
    )
    return storage


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def storage():
    return seed(MemoryStorage())


@pytest.fixture
def notifier():
    return MemoryNotifier()


@pytest.fixture
def reassigner():
    return MemoryReassigner()


@pytest.fixture
def scheduler(storage, notifier, reassigner, config, clock):
    return AssignmentScheduler(storage, notifier, reassigner, config=config, clock=clock)


@pytest.fixture
def service(storage, config, clock):
    return AssignmentService(storage, config=config, clock=clock)


def get_assignment(storage, assignment_id):
    with storage.transaction() as s:
        return s.assignments.get(assignment_id)


def get_case(storage, case_id):
    with storage.transaction() as s:
        return s.cases.get(case_id)


def get_doctor(storage, doctor_id):
    with storage.transaction() as s:
        return s.doctors.get_workload_snapshot(doctor_id)
