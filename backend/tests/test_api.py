"""HTTP tests for the FastAPI app."""

import json
import time

import pytest
from fastapi.testclient import TestClient

from api.routes import health
from api.server import create_app
from helpers import JAZZ, NARRATIVE, PLAN, ScriptedLLM, make_services
from schemas.trace import TraceEvent, TraceEventType, TraceStatus

FORM = {
    "occasion": "date_night",
    "budgetRange": "30_to_80",
    "partySize": 2,
    "date": "2030-03-15",
    "timeOfDay": "evening",
    "duration": "2_3_hours",
    "areas": ["anywhere"],
}


def frames(client: TestClient, workflow_id: str) -> list[dict]:
    """Read the SSE stream of a run until its done frame."""
    out = []
    with client.stream("GET", f"/v1/traces/stream/{workflow_id}") as resp:
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        for line in resp.iter_lines():
            if line.startswith("data: "):
                out.append(json.loads(line[len("data: "):]))
                if out[-1].get("type") == "done":
                    break
    return out


def wait_until(predicate, timeout_s: float = 5.0) -> None:
    deadline = time.monotonic() + timeout_s
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.02)


@pytest.fixture
def services(tmp_path):
    return make_services(tmp_path, ScriptedLLM("not json", NARRATIVE, PLAN))


@pytest.fixture
def client(services):
    app = create_app(services)
    app.state.heartbeat_s = 0.05
    with TestClient(app) as c:
        yield c


class TestHealth:
    """Test suite for the health endpoint."""

    def test_health(self, client) -> None:
        resp = client.get("/v1/health")

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "service": "outing-planner"}

    def test_ready_with_stores_disabled(self, client, monkeypatch) -> None:
        monkeypatch.setattr(health.config, "USE_POSTGRES", False)
        monkeypatch.setattr(health.config, "USE_REDIS_CONTEXT", False)

        resp = client.get("/v1/health/ready")

        assert resp.status_code == 200
        assert resp.json()["checks"] == {"postgres": "disabled", "redis": "disabled"}

    def test_ready_degraded_when_redis_is_down(self, client, monkeypatch) -> None:
        def ping_redis():
            raise ConnectionError("connection refused")

        monkeypatch.setattr(health.config, "USE_POSTGRES", True)
        monkeypatch.setattr(health.config, "USE_REDIS_CONTEXT", True)
        monkeypatch.setattr(health, "ping_postgres", lambda: None)
        monkeypatch.setattr(health, "ping_redis", ping_redis)

        resp = client.get("/v1/health/ready")

        assert resp.status_code == 503
        body = resp.json()
        assert body["status"] == "degraded"
        assert body["checks"] == {"postgres": "ok", "redis": "error: connection refused"}


class TestWorkflowRoutes:
    """Test suite for starting and approving runs."""

    def test_start_rejects_invalid_form(self, client) -> None:
        resp = client.post("/v1/workflow", json={"formData": {**FORM, "partySize": 11}})

        assert resp.status_code == 422

    def test_approve_unknown_run(self, client) -> None:
        resp = client.post("/v1/workflow/run-missing/approve", json={"approved": True})

        assert resp.status_code == 404

    @pytest.mark.parametrize("body", [{"approved": "yes"}, {"approved": 1}, {}])
    def test_approve_requires_boolean(self, client, body) -> None:
        resp = client.post("/v1/workflow/run-missing/approve", json=body)

        assert resp.status_code == 422

    def test_full_run_over_http(self, client, services) -> None:
        """Test start, approval, a repeated approval and the streamed trace of one run."""
        resp = client.post("/v1/workflow", json={
            "formData": FORM,
            "userId": "user-7",
            "profile": {"name": "Alex Tan", "email": "alex@example.com"},
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["phase"] == "started"
        workflow_id = body["workflowId"]
        assert workflow_id.startswith("run-")

        wait_until(lambda: services.approvals.has_pending_approval(workflow_id))
        resp = client.post(f"/v1/workflow/{workflow_id}/approve", json={"approved": True})
        assert resp.status_code == 200
        assert resp.json() == {"workflowId": workflow_id, "approved": True}

        again = client.post(f"/v1/workflow/{workflow_id}/approve", json={"approved": False})
        assert again.status_code == 409

        streamed = frames(client, workflow_id)
        assert streamed[0] == {"type": "connected", "workflowId": workflow_id}
        assert streamed[-1] == {"type": "done", "workflowId": workflow_id}
        names = [f["name"] for f in streamed[1:-1]]
        assert names[0] == "Understanding your request…"
        assert "Plan approved" in names
        assert f"✅ {JAZZ}" in names
        assert names[-1] == "pipeline-result"

        ctx = services.contexts.get(workflow_id)
        assert ctx.user_id == "user-7"
        assert ctx.user_profile.name == "Alex Tan"


class TestTraceRoutes:
    """Test suite for trace history lookups."""

    def test_unknown_run(self, client) -> None:
        assert client.get("/v1/traces/run-missing").status_code == 404

    def test_history_from_memory(self, client, services) -> None:
        workflow_id = client.post("/v1/workflow", json={"formData": FORM}).json()["workflowId"]
        wait_until(lambda: services.approvals.has_pending_approval(workflow_id))
        client.post(f"/v1/workflow/{workflow_id}/approve", json={"approved": False})
        frames(client, workflow_id)

        resp = client.get(f"/v1/traces/{workflow_id}")

        assert resp.status_code == 200
        body = resp.json()
        assert body["workflowId"] == workflow_id
        assert body["source"] == "memory"
        assert "Plan rejected" in [e["name"] for e in body["events"]]
        assert body["events"][-1]["name"] == "pipeline-result"

    def test_history_falls_back_to_trace_log(self, client, services) -> None:
        """Test that a run no longer held in memory is served from its JSONL log."""
        services.trace_log.record(TraceEvent(
            trace_id="run-archived",
            type=TraceEventType.WORKFLOW_RUN,
            name="pipeline-result",
            status=TraceStatus.COMPLETED,
        ))

        resp = client.get("/v1/traces/run-archived")

        assert resp.status_code == 200
        body = resp.json()
        assert body["source"] == "log"
        assert [e["name"] for e in body["events"]] == ["pipeline-result"]
