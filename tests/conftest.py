"""Pytest configuration and fixtures."""

import os

import pytest

from tests.fakes.fake_db import fake_db


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    # No provider keys: embeddings use the hashed fallback, real clients are disabled
    os.environ["OPENAI_API_KEY"] = ""
    os.environ["GROQ_API_KEY"] = ""
    os.environ["ANTHROPIC_API_KEY"] = ""
    os.environ["CONTINUITY_ENV"] = "test"
    os.environ["TOKEN_ESTIMATOR"] = "heuristic"

    from app.core.config import get_settings

    get_settings.cache_clear()


@pytest.fixture
def db():
    """In-memory job/checkpoint store, reset for every test."""
    fake_db.reset()
    yield fake_db
    fake_db.reset()


@pytest.fixture
def patched_db(db, monkeypatch: pytest.MonkeyPatch):
    """Route every job and checkpoint helper through the in-memory store."""
    for module in ("app.services.handoff_runner", "app.api.handoff"):
        monkeypatch.setattr(f"{module}.finalize_job", db.finalize_job, raising=False)
        monkeypatch.setattr(f"{module}.fail_job", db.fail_job, raising=False)
        monkeypatch.setattr(f"{module}.update_job_progress", db.update_job_progress, raising=False)
    monkeypatch.setattr("app.api.handoff.create_handoff_job", db.create_handoff_job)
    monkeypatch.setattr("app.api.handoff.get_job", db.get_job)
    monkeypatch.setattr("app.api.handoff.list_checkpoint_summaries", db.list_checkpoint_summaries)
    monkeypatch.setattr("app.api.checkpoints.save_checkpoint", db.save_checkpoint)
    return db
