"""Tests for the handoff and checkpoint HTTP endpoints."""

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app
from tests.fakes.fake_llm import FakeCompletionClient

CHUNKS = [
    "user: We decided to rotate the signing keys before Friday. The refresh handler drops the session.",
    "assistant: Agreed, we chose to patch the refresh handler first. Tests come after the patch.",
]


@pytest.fixture
def client(patched_db, monkeypatch):
    monkeypatch.setattr(
        "app.services.handoff_runner.CompletionClient",
        lambda run, plan="free", settings=None: FakeCompletionClient(run=run),
    )
    return TestClient(app)


def _start(client, **body):
    payload = {"thread_id": "thread-1", "title": "Fix login bug", **body}
    response = client.post("/v1/handoff/start", json=payload)
    assert response.status_code == 200
    return response.json()


def test_start_without_chunks_finalizes_immediately(client, patched_db):
    data = _start(client)

    status = client.get(f"/v1/handoff/status/{data['job_id']}").json()
    assert status["stage"] == "final"
    assert status["status"] == "done"
    assert status["percent"] == 100
    assert status["result"] == "(no input)"
    assert data["meta"]["chunks"] == 0


def test_blank_chunks_count_as_no_input(client):
    data = _start(client, chunks=["", "   "])

    assert data["meta"]["chunks"] == 0
    result = client.get(f"/v1/handoff/result/{data['job_id']}").json()
    assert result["result"] == "(no input)"


def test_start_runs_pipeline_in_background(client, patched_db):
    data = _start(client, chunks=CHUNKS, revision="map_reduce")

    assert data["meta"]["revision"] == "map_reduce"
    assert data["meta"]["token_estimate"] > 0

    response = client.get(f"/v1/handoff/result/{data['job_id']}")
    assert response.status_code == 200
    body = response.json()
    assert body["stage"] == "final"
    assert body["result"].startswith("# Fix login bug")
    assert body["meta"]["continuity_fallback"] is None
    assert body["meta"]["model"] == "groq:llama-3.1-8b-instant"


def test_messages_are_chunked_when_no_chunks_given(client):
    messages = [
        {"role": "user", "content": "We decided to rotate the signing keys before Friday."},
        {"role": "assistant", "content": "Agreed, the refresh handler gets patched first."},
    ]

    data = _start(client, messages=messages, revision="map_reduce")

    assert data["meta"]["chunks"] == 1


def test_raw_text_is_windowed_when_no_chunks_or_messages(client):
    text = "We decided to rotate the signing keys. " * 80

    data = _start(client, text=text, revision="map_reduce")

    assert data["meta"]["chunks"] == 3
    result = client.get(f"/v1/handoff/result/{data['job_id']}").json()
    assert result["result"].startswith("# Fix login bug")


def test_blank_raw_text_counts_as_no_input(client):
    data = _start(client, text="   \n  ")

    assert data["meta"]["chunks"] == 0


def test_chunks_take_precedence_over_raw_text(client):
    data = _start(client, chunks=CHUNKS, text="ignored " * 400, revision="map_reduce")

    assert data["meta"]["chunks"] == 2


def test_checkpoint_count_reported(client, patched_db):
    patched_db.save_checkpoint("thread-1", "Earlier", "We chose Postgres for the job table.")

    data = _start(client)

    assert data["meta"]["checkpoint_count"] == 1


def test_unknown_revision_rejected(client):
    response = client.post("/v1/handoff/start", json={"thread_id": "t", "revision": "turbo"})
    assert response.status_code == 422


def test_create_failure_returns_500(client, monkeypatch):
    def boom(**kwargs):
        raise RuntimeError("insert failed")

    monkeypatch.setattr("app.api.handoff.create_handoff_job", boom)

    response = client.post("/v1/handoff/start", json={"thread_id": "thread-1"})
    assert response.status_code == 500


def test_recall_failure_is_not_fatal(client, monkeypatch):
    def boom(thread_id):
        raise RuntimeError("checkpoints table missing")

    monkeypatch.setattr("app.api.handoff.list_checkpoint_summaries", boom)

    data = _start(client)
    assert data["meta"]["checkpoint_count"] == 0


def test_status_unknown_job_404(client):
    assert client.get("/v1/handoff/status/missing").status_code == 404
    assert client.get("/v1/handoff/result/missing").status_code == 404


def test_status_reports_running_job(client, patched_db):
    job_id = patched_db.create_handoff_job("thread-1", "T", "free", "selective")
    patched_db.update_job_progress(job_id, {"stage": "reduce", "percent": 70})

    status = client.get(f"/v1/handoff/status/{job_id}").json()

    assert status == {
        "job_id": job_id,
        "stage": "reduce",
        "status": "running",
        "percent": 70,
        "has_result": False,
        "result": None,
    }


def test_result_of_failed_job_500(client, patched_db):
    job_id = patched_db.create_handoff_job("thread-1", "T", "free", "selective")
    patched_db.fail_job(job_id, "All pipeline variants failed")

    response = client.get(f"/v1/handoff/result/{job_id}")

    assert response.status_code == 500
    assert "All pipeline variants failed" in response.json()["detail"]


def test_result_times_out_with_504(client, patched_db, monkeypatch):
    settings = get_settings().model_copy(update={"RESULT_TIMEOUT_S": 0.05, "RESULT_POLL_INTERVAL_S": 0.01})
    monkeypatch.setattr("app.api.handoff.get_settings", lambda: settings)
    job_id = patched_db.create_handoff_job("thread-1", "T", "free", "selective")

    response = client.get(f"/v1/handoff/result/{job_id}")

    assert response.status_code == 504


def test_save_checkpoint(client, patched_db):
    response = client.post(
        "/v1/checkpoints",
        json={"thread_id": "thread-1", "title": "Day one", "content": "We chose Postgres."},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["checkpoint_number"] == 1
    assert len(body["content_hash"]) == 64
    assert patched_db.list_checkpoint_summaries("thread-1") == ["We chose Postgres."]


def test_save_checkpoint_rejects_empty_content(client):
    response = client.post("/v1/checkpoints", json={"thread_id": "thread-1", "content": ""})
    assert response.status_code == 422


def test_save_checkpoint_failure_500(client, monkeypatch):
    def boom(**kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr("app.api.checkpoints.save_checkpoint", boom)

    response = client.post("/v1/checkpoints", json={"thread_id": "thread-1", "content": "x"})
    assert response.status_code == 500


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
