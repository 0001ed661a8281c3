"""
API tests for the `learnflow/api` routers using FastAPI's TestClient.

Covers:
- POST /api/query: concept and code queries, degraded responses, and the error payloads for
  invalid queries (400), failed analyzers (502) and an unavailable Session Store (503)
- /api/sessions/{id}/...: mode switching, context window, gap listing and resolution, teardown
- GET /api/users/{id}/progress: the Progress Store view
- GET /metrics: the Prometheus endpoint

Instead of patching module attributes, each test builds its own runtime with fakes and installs it
through `app.dependency_overrides[get_runtime]`. The client is used as a context manager so the
application lifespan (background scheduler, final Progress Store flush) runs against that runtime
and every request shares one event loop.
"""

from contextlib import contextmanager

from fastapi.testclient import TestClient

from fakes import CONCEPT_MARKER, FailingSessionStore, FailingVisualClient, FakeAIService, FlakyProgressStore, build_test_runtime
from learnflow.llm_cloud import AIUnavailable
from learnflow.main import app
from learnflow.runtime import get_runtime

INFINITE_LOOP = "while True:\n    print('hello')\n"


@contextmanager
def serve(runtime=None):
    runtime = runtime or build_test_runtime()
    app.dependency_overrides[get_runtime] = lambda: runtime
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


def _query(client, text, session_id="s1", user_id="u1", **extra):
    return client.post("/api/query", json={"session_id": session_id, "user_id": user_id, "text": text, **extra})


def _assert_error_payload(resp, status, code):
    assert resp.status_code == status
    body = resp.json()
    assert body["error"] == code
    assert set(body) == {"error", "message", "suggestion"}


def test_query_concept_success():
    with serve() as client:
        resp = _query(client, "explain recursion")

    assert resp.status_code == 200
    body = resp.json()
    assert body["queryType"] == "concept_question"
    assert body["mode"] == "concept"
    assert body["content"]
    assert body["degraded"] is False
    assert "warning" not in body


def test_query_code_detects_gap_and_gap_can_be_resolved():
    with serve() as client:
        resp = _query(client, "Why does this hang?", code=INFINITE_LOOP, language="python")
        assert resp.status_code == 200
        assert [gap["concept"] for gap in resp.json()["detectedGaps"]] == ["loop termination"]

        gaps = client.get("/api/sessions/s1/gaps").json()["gaps"]
        assert gaps[0]["category"] == "control_flow"

        resolved = client.post("/api/sessions/s1/gaps/resolve", json={"concept": "Loop termination"})
        assert resolved.status_code == 200
        assert resolved.json()["resolvedAt"] is not None

        assert client.get("/api/sessions/s1/gaps").json()["gaps"] == []
        assert len(client.get("/api/sessions/s1/gaps", params={"include_resolved": True}).json()["gaps"]) == 1

        progress = client.get("/api/users/u1/progress").json()
        assert [gap["concept"] for gap in progress["gaps"]] == ["loop termination"]
        assert progress["openGapCount"] == 0

        missing = client.post("/api/sessions/s1/gaps/resolve", json={"concept": "loop termination"})
        _assert_error_payload(missing, 404, "not_found")


def test_query_invalid_returns_400():
    with serve() as client:
        _assert_error_payload(_query(client, "   "), 400, "invalid_query")
        _assert_error_payload(
            _query(client, "explain", code="MOVE 1 TO X.", language="cobol"), 400, "invalid_query",
        )


def test_query_visual_unavailable_returns_degraded_200():
    with serve(build_test_runtime(visual_client=FailingVisualClient())) as client:
        resp = _query(client, "Draw a diagram of a binary search tree")

    assert resp.status_code == 200
    body = resp.json()
    assert body["visualAids"] == []
    assert body["degraded"] is True
    assert body["warning"]["warning"] == "visual_unavailable"


def test_query_all_required_analyzers_failed_returns_502():
    runtime = build_test_runtime(FakeAIService(rules=[(CONCEPT_MARKER, AIUnavailable("provider down"))]))
    with serve(runtime) as client:
        resp = _query(client, "explain recursion")

    _assert_error_payload(resp, 502, "service_unavailable")
    assert "provider down" not in resp.text


def test_query_store_down_at_session_creation_returns_503():
    with serve(build_test_runtime(session_store=FailingSessionStore(fail_put=True))) as client:
        resp = _query(client, "explain recursion")

    _assert_error_payload(resp, 503, "storage_unavailable")


def test_mode_switch_applies_to_next_query():
    with serve() as client:
        resp = client.put("/api/sessions/s1/mode", json={"mode": "EXAM", "user_id": "u1"})
        assert resp.status_code == 200
        assert resp.json() == {"sessionId": "s1", "mode": "exam", "previousMode": "concept"}

        assert client.get("/api/sessions/s1/mode").json()["mode"] == "exam"
        assert _query(client, "explain recursion").json()["mode"] == "exam"


def test_mode_switch_rejects_unknown_mode():
    with serve() as client:
        resp = client.put("/api/sessions/s1/mode", json={"mode": "cram", "user_id": "u1"})

    _assert_error_payload(resp, 400, "unsupported_mode")


def test_unknown_session_returns_404():
    with serve() as client:
        _assert_error_payload(client.get("/api/sessions/nope/mode"), 404, "not_found")
        _assert_error_payload(client.get("/api/sessions/nope/context"), 404, "not_found")
        _assert_error_payload(client.post("/api/sessions/nope/end"), 404, "not_found")


def test_context_window_and_session_end():
    with serve() as client:
        _query(client, "explain recursion")
        _query(client, "explain closures")

        context = client.get("/api/sessions/s1/context").json()
        assert context["capacity"] == 8
        assert [entry["query"]["text"] for entry in context["entries"]] == ["explain recursion", "explain closures"]
        assert context["estimatedTokens"] > 0

        ended = client.post("/api/sessions/s1/end")
        assert ended.status_code == 200
        assert ended.json()["queryCount"] == 2

        assert client.get("/api/sessions/s1/context").status_code == 404


def test_progress_store_down_returns_503():
    with serve(build_test_runtime(progress_store=FlakyProgressStore(down=True))) as client:
        resp = client.get("/api/users/u1/progress")

    _assert_error_payload(resp, 503, "storage_unavailable")


def test_metrics_endpoint_exposes_learnflow_metrics():
    with serve() as client:
        _query(client, "explain recursion")
        resp = client.get("/metrics")

    assert resp.status_code == 200
    assert "learnflow_queries_total" in resp.text
