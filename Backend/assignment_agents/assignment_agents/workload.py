# assignment_agents/workload.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .models import CaseRecord, DoctorWorkloadSnapshot, UrgencyLevel, norm_enum

log = logging.getLogger(__name__)

SPECIALIZATION_WEIGHT = 0.40
WORKLOAD_WEIGHT = 0.40
RATING_WEIGHT = 0.20

WORKLOAD_PENALTY_THRESHOLD = 80.0
NEUTRAL_RATING_SCORE = 0.5


@dataclass
class MatchCandidate:
    doctor_id: int
    score: float
    workload_percentage: float
    breakdown: Dict[str, float] = field(default_factory=dict)


def is_eligible(doctor: DoctorWorkloadSnapshot) -> bool:
    """Unavailable or full doctors are never candidates, whatever their score would be."""
    return bool(doctor.is_available) and doctor.has_case_capacity


def specialization_score(case: CaseRecord, doctor: DoctorWorkloadSnapshot) -> float:
    required = case.required_specialization
    subs = set(doctor.sub_specializations or ())
    secondary_hits = sum(1 for s in case.secondary_specializations if s in subs or s == doctor.primary_specialization)

    if required and required == doctor.primary_specialization:
        return min(1.0, 0.8 + 0.1 * secondary_hits)
    if required and required in subs:
        return min(0.6, 0.5 + 0.05 * secondary_hits)
    if secondary_hits:
        return min(0.4, 0.2 * secondary_hits)
    if not required and not case.secondary_specializations:
        return 0.5
    return 0.0


def workload_score(case: CaseRecord, doctor: DoctorWorkloadSnapshot) -> float:
    urgent = norm_enum(UrgencyLevel, case.urgency_level, default=UrgencyLevel.MEDIUM).is_urgent
    score = 0.20

    pct = doctor.workload_percentage
    if pct <= 30.0:
        score += 0.50
    elif pct <= 50.0:
        score += 0.40
    elif pct <= 70.0:
        score += 0.25
    elif pct <= 90.0:
        score += 0.10

    case_ratio = doctor.active_cases / doctor.max_active_cases if doctor.max_active_cases else 1.0
    if case_ratio <= 0.5:
        score += 0.20
    elif case_ratio <= 0.7:
        score += 0.15
    elif case_ratio <= 0.9:
        score += 0.05

    appt_ratio = doctor.today_appointments / doctor.max_daily_appointments if doctor.max_daily_appointments else 1.0
    if appt_ratio <= 0.5:
        score += 0.10
    elif appt_ratio <= 0.8:
        score += 0.05

    if doctor.emergency_mode:
        # emergency-mode doctors are held for urgent work
        score = score + 0.15 if urgent else score * 0.5

    return min(1.0, score)


def rating_score(doctor: DoctorWorkloadSnapshot) -> float:
    if doctor.average_rating is None:
        return NEUTRAL_RATING_SCORE
    return max(0.0, min(1.0, float(doctor.average_rating) / 5.0))


def matching_score(case: CaseRecord, doctor: DoctorWorkloadSnapshot) -> Optional[float]:
    """
    Compatibility in [0, 1] between a case and a doctor's current capacity.
    None when the doctor is not eligible at all.
    """
    if not is_eligible(doctor):
        return None
    return score_breakdown(case, doctor)["total"]


def score_breakdown(case: CaseRecord, doctor: DoctorWorkloadSnapshot) -> Dict[str, float]:
    spec = specialization_score(case, doctor)
    load = workload_score(case, doctor)
    rating = rating_score(doctor)
    total = spec * SPECIALIZATION_WEIGHT + load * WORKLOAD_WEIGHT + rating * RATING_WEIGHT

    pct = doctor.workload_percentage
    if pct > WORKLOAD_PENALTY_THRESHOLD:
        total *= max(0.3, 1.0 - (pct - WORKLOAD_PENALTY_THRESHOLD) / 100.0)

    if norm_enum(UrgencyLevel, case.urgency_level, default=UrgencyLevel.MEDIUM).is_urgent:
        if doctor.emergency_mode:
            total *= 1.2
        elif pct < 60.0:
            total *= 1.1

    return {
        "specialization": round(spec, 4),
        "workload_availability": round(load, 4),
        "rating": round(rating, 4),
        "total": round(max(0.0, min(1.0, total)), 4),
    }


class WorkloadTracker:
    """
    Reads doctor capacity through the Doctor Directory and keeps its counters
    in step with assignment outcomes. Counter changes always go through the
    directory's atomic adjust_workload(); nothing here reads-then-writes.
    """

    def rank_candidates(
        self,
        doctors,
        case: CaseRecord,
        excluded_doctor_ids: Iterable[int] = (),
        limit: int = 5,
    ) -> List[MatchCandidate]:
        excluded = set(excluded_doctor_ids)
        specs = [case.required_specialization, *case.secondary_specializations]
        out: List[MatchCandidate] = []
        for doctor in doctors.list_by_specializations(specs):
            if doctor.doctor_id in excluded or not is_eligible(doctor):
                continue
            breakdown = score_breakdown(case, doctor)
            out.append(
                MatchCandidate(
                    doctor_id=doctor.doctor_id,
                    score=breakdown["total"],
                    workload_percentage=doctor.workload_percentage,
                    breakdown=breakdown,
                )
            )
        out.sort(key=lambda c: (-c.score, c.workload_percentage, c.doctor_id))
        return out[: max(0, int(limit))]

    def score_for(self, doctors, case: CaseRecord, doctor_id: int) -> Optional[float]:
        snapshot = doctors.get_workload_snapshot(doctor_id)
        if snapshot is None:
            return None
        return matching_score(case, snapshot)

    def on_assigned(self, doctors, doctor_id: int) -> None:
        doctors.adjust_workload(doctor_id, +1)
        log.debug("workload +1 doctor=%s", doctor_id)

    def on_released(self, doctors, doctor_id: int) -> None:
        doctors.adjust_workload(doctor_id, -1)
        log.debug("workload -1 doctor=%s", doctor_id)
