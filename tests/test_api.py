"""
Tests for the admin HTTP service
"""

import jwt
import pytest
from fastapi.testclient import TestClient

from assignment_agents.api import create_app
from assignment_agents.models import AssignmentStatus
from assignment_agents.worker import TaskTicker, register_scheduler_tasks

from conftest import T0, get_assignment

SECRET = "test-secret"


def _auth(role="Admin", secret=SECRET):
    token = jwt.encode({"sub": "1", "role": role}, secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def ticker(scheduler):
    t = register_scheduler_tasks(TaskTicker(), scheduler, scheduler.config)
    yield t
    t.shutdown()


@pytest.fixture
def client(scheduler, ticker):
    return TestClient(create_app(scheduler, ticker, jwt_secret=SECRET))


class TestAuth:
    def test_health_is_open(self, client):
        r = client.get("/scheduler/health")
        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is True
        assert set(body["tasks"]) == {"expiration", "reminders", "cleanup", "emergency_mode"}

    def test_missing_token(self, client):
        assert client.get("/scheduler/statistics").status_code == 401

    def test_bad_signature(self, client):
        assert client.get("/scheduler/statistics", headers=_auth(secret="other")).status_code == 401

    def test_non_admin_cannot_mutate(self, client):
        r = client.post("/scheduler/run/expiration", headers=_auth(role="Doctor"))
        assert r.status_code == 403

    def test_non_admin_can_read(self, client):
        assert client.get("/scheduler/config", headers=_auth(role="Doctor")).status_code == 200


class TestEndpoints:
    def test_config(self, client):
        body = client.get("/scheduler/config", headers=_auth()).json()
        assert body["check_interval_seconds"] == 300
        assert body["reminder_hours_from_assignment"] == [12, 20, 23]

    def test_statistics(self, client, service):
        service.create_assignment(1, 10, now=T0)
        body = client.get("/scheduler/statistics", headers=_auth()).json()
        assert body["totalPendingAssignments"] == 1
        assert body["totalExpiredAssignments"] == 0

    def test_expire_replay(self, client, service, storage, clock, reassigner):
        a = service.create_assignment(1, 10, now=T0)
        clock.advance(hours=2)
        r = client.post(f"/scheduler/assignments/{a.id}/expire", headers=_auth())
        assert r.status_code == 200
        body = r.json()
        assert body["expired"] is True
        assert body["caseReverted"] is True
        assert body["expirationCount"] == 1
        assert body["excludedDoctorIds"] == [10]
        assert body["assignment"]["status"] == "EXPIRED"
        assert get_assignment(storage, a.id).status == AssignmentStatus.EXPIRED
        assert len(reassigner.requests) == 1

        again = client.post(f"/scheduler/assignments/{a.id}/expire", headers=_auth()).json()
        assert again["expired"] is False
        assert len(reassigner.requests) == 1

    def test_expire_unknown(self, client):
        assert client.post("/scheduler/assignments/404/expire", headers=_auth()).status_code == 404

    def test_run_task(self, client, service, clock):
        service.create_assignment(1, 10, now=T0)
        clock.advance(hours=24, minutes=5)
        r = client.post("/scheduler/run/expiration", headers=_auth())
        assert r.status_code == 200
        assert r.json()["ran"] is True
        assert r.json()["processed"] == 1

    def test_run_unknown_task(self, client):
        assert client.post("/scheduler/run/nope", headers=_auth()).status_code == 404

    def test_run_while_running(self, client, ticker):
        lock = ticker._tasks["cleanup"].lock
        lock.acquire()
        try:
            assert client.post("/scheduler/run/cleanup", headers=_auth()).status_code == 409
        finally:
            lock.release()


class TestDevMode:
    def test_no_secret_is_permissive(self, scheduler, ticker):
        client = TestClient(create_app(scheduler, ticker, jwt_secret=""))
        assert client.post("/scheduler/run/cleanup").status_code == 200
