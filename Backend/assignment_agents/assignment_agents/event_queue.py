# assignment_agents/event_queue.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable

from .db import enqueue_event as _enqueue_db, get_conn, safe_close, transaction
from .events import CASE_REASSIGNMENT_REQUESTED

log = logging.getLogger(__name__)


def reassignment_dedupe_key(case_id: int, excluded_doctor_ids: Iterable[int], round_no: int) -> str:
    """
    Same case, same round, same exclusion set -> same key.
    The round number keeps a later timeout with an identical set from being swallowed.
    """
    excl = ",".join(str(d) for d in sorted({int(x) for x in excluded_doctor_ids}))
    return f"case_reassign:{int(case_id)}:{int(round_no)}:{excl}"


class OutboxReassignmentRequester:
    """
    RequestReassignment collaborator: drops a CaseReassignmentRequested event
    into agent_events for the matching service to pick up.
    """

    def __init__(self, conn_factory: Callable[[], Any] = get_conn, clock: Callable[[], datetime] = datetime.now):
        self._conn_factory = conn_factory
        self._clock = clock

    def request_reassignment(
        self,
        case_id: int,
        excluded_doctor_ids: Iterable[int],
        *,
        candidate_doctor_ids: Iterable[int] = (),
        round_no: int = 0,
    ) -> int:
        excluded = sorted({int(d) for d in excluded_doctor_ids})
        payload = {
            "caseId": int(case_id),
            "excludedDoctorIds": excluded,
            "candidateDoctorIds": [int(d) for d in candidate_doctor_ids],
            "round": int(round_no),
        }
        conn = self._conn_factory()
        try:
            with transaction(conn):
                event_id = _enqueue_db(
                    conn,
                    CASE_REASSIGNMENT_REQUESTED,
                    payload,
                    priority=60,
                    dedupe_key=reassignment_dedupe_key(case_id, excluded, round_no),
                    correlation_id=f"case:{int(case_id)}",
                    now=self._clock(),
                )
        finally:
            safe_close(conn)
        log.info("Reassignment requested case=%s excluded=%s event_id=%s", case_id, excluded, event_id)
        return event_id
