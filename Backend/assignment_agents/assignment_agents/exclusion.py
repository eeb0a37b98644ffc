# assignment_agents/exclusion.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import FrozenSet

from .config import SchedulerConfig
from .models import AssignmentStatus

log = logging.getLogger(__name__)


class ExclusionPolicy:
    """
    Doctors barred from the next reassignment round of a case.

    can_reassign_to_same_doctor=False: every doctor with an EXPIRED assignment
    for the case, forever (the set only grows).
    can_reassign_to_same_doctor=True: only the doctor who just timed out, and
    only while their expiry is younger than reassignment_cooldown_hours.
    """

    def __init__(self, config: SchedulerConfig) -> None:
        self.config = config

    def excluded_doctors(self, assignments, case_id: int, expired_doctor_id: int, now: datetime) -> FrozenSet[int]:
        if not self.config.can_reassign_to_same_doctor:
            excluded = frozenset(assignments.doctor_ids_by_case_and_status(case_id, AssignmentStatus.EXPIRED))
            log.info("Excluding %s doctors from reassignment for case %s", len(excluded), case_id)
            return excluded

        cooldown_cutoff = now - timedelta(hours=self.config.reassignment_cooldown_hours)
        if assignments.exists_expired_since(case_id, expired_doctor_id, cooldown_cutoff):
            log.info("Doctor %s is in cooldown period for case %s", expired_doctor_id, case_id)
            return frozenset({int(expired_doctor_id)})
        return frozenset()
