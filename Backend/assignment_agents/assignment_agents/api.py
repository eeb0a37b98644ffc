# assignment_agents/api.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import jwt
from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .errors import NotFoundError
from .models import ADMIN_ROLE
from .scheduler import AssignmentScheduler
from .worker import TaskTicker

log = logging.getLogger(__name__)

API_VERSION = "1.0"


class AssignmentOut(BaseModel):
    id: int
    caseId: int
    doctorId: int
    status: str
    priority: str
    assignedAt: datetime
    expiresAt: datetime
    respondedAt: Optional[datetime] = None


class ExpireResponse(BaseModel):
    expired: bool
    caseReverted: bool
    expirationCount: int
    escalated: bool
    reassignmentRequested: bool
    excludedDoctorIds: List[int] = []
    candidateDoctorIds: List[int] = []
    assignment: Optional[AssignmentOut] = None


class StatisticsResponse(BaseModel):
    totalPendingAssignments: int
    totalExpiredAssignments: int
    expiredLast24Hours: int
    casesRequiringManualIntervention: int
    remindersSentToday: int
    schedulerEnabled: bool
    reminderEnabled: bool
    assignmentTimeoutHours: int


class TaskRunResponse(BaseModel):
    task: str
    ran: bool
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    error: Optional[str] = None


# ----------------------------
# JWT verify
# ----------------------------
def verify_jwt_or_401(auth_header: Optional[str], secret: str) -> Dict[str, Any]:
    if not secret:
        return {}  # dev permissive
    if not auth_header or not auth_header.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization token")
    token = auth_header.split(" ", 1)[1].strip()
    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def require_admin_or_403(claims: Dict[str, Any], secret: str) -> None:
    if not secret:
        return
    if str(claims.get("role") or "").lower() != ADMIN_ROLE.lower():
        raise HTTPException(status_code=403, detail="Admin role required")


def _assignment_out(a) -> Optional[AssignmentOut]:
    if a is None:
        return None
    return AssignmentOut(
        id=a.id,
        caseId=a.case_id,
        doctorId=a.doctor_id,
        status=a.status.value,
        priority=a.priority.value,
        assignedAt=a.assigned_at,
        expiresAt=a.expires_at,
        respondedAt=a.responded_at,
    )


def create_app(scheduler: AssignmentScheduler, ticker: TaskTicker, jwt_secret: str = "") -> FastAPI:
    app = FastAPI(title="Case Assignment Scheduler", version=API_VERSION)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/scheduler/health")
    def health():
        cfg = scheduler.config
        return {
            "ok": True,
            "schedulerEnabled": cfg.scheduler_enabled,
            "reminderEnabled": cfg.reminder_enabled,
            "tasks": ticker.status(),
            "version": API_VERSION,
        }

    @app.get("/scheduler/statistics", response_model=StatisticsResponse)
    def statistics(authorization: Optional[str] = Header(default=None)):
        verify_jwt_or_401(authorization, jwt_secret)
        stats = scheduler.get_statistics()
        return StatisticsResponse(
            totalPendingAssignments=stats.total_pending_assignments,
            totalExpiredAssignments=stats.total_expired_assignments,
            expiredLast24Hours=stats.expired_last_24_hours,
            casesRequiringManualIntervention=stats.cases_requiring_manual_intervention,
            remindersSentToday=stats.reminders_sent_today,
            schedulerEnabled=stats.scheduler_enabled,
            reminderEnabled=stats.reminder_enabled,
            assignmentTimeoutHours=stats.assignment_timeout_hours,
        )

    @app.get("/scheduler/config")
    def current_config(authorization: Optional[str] = Header(default=None)):
        verify_jwt_or_401(authorization, jwt_secret)
        return scheduler.config.as_dict()

    @app.post("/scheduler/assignments/{assignment_id}/expire", response_model=ExpireResponse)
    def expire_assignment(assignment_id: int, authorization: Optional[str] = Header(default=None)):
        claims = verify_jwt_or_401(authorization, jwt_secret)
        require_admin_or_403(claims, jwt_secret)
        try:
            outcome = scheduler.expire_assignment(assignment_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        log.info("Manual expire assignment=%s by=%s expired=%s", assignment_id, claims.get("sub"), outcome.expired)
        return ExpireResponse(
            expired=outcome.expired,
            caseReverted=outcome.case_reverted,
            expirationCount=outcome.expiration_count,
            escalated=outcome.escalated,
            reassignmentRequested=outcome.reassignment_requested,
            excludedDoctorIds=list(outcome.excluded_doctor_ids),
            candidateDoctorIds=list(outcome.candidate_doctor_ids),
            assignment=_assignment_out(outcome.assignment),
        )

    @app.post("/scheduler/run/{task}", response_model=TaskRunResponse)
    def run_task(task: str, authorization: Optional[str] = Header(default=None)):
        claims = verify_jwt_or_401(authorization, jwt_secret)
        require_admin_or_403(claims, jwt_secret)
        if task not in ticker.task_names:
            raise HTTPException(status_code=404, detail=f"Unknown task {task}")
        run = ticker.run_task(task)
        if not run.ran and run.error is None:
            raise HTTPException(status_code=409, detail=f"Task {task} is already running")
        report = run.result
        return TaskRunResponse(
            task=task,
            ran=run.ran,
            processed=getattr(report, "processed", 0),
            failed=getattr(report, "failed", 0),
            skipped=getattr(report, "skipped", 0),
            error=run.error,
        )

    return app
