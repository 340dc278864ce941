"""Fake in-memory database layer for handoff job and checkpoint tests."""

import hashlib
from typing import Any
from uuid import uuid4


class FakeDB:
    """In-memory implementation of app.db.jobs and app.db.checkpoints."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all stores to initial state."""
        self.jobs: dict[str, dict[str, Any]] = {}
        self.checkpoints: list[dict[str, Any]] = []
        self.progress_writes: list[dict[str, Any]] = []
        self.fail_progress = False

    # Job operations
    def create_handoff_job(
        self,
        thread_id: str,
        title: str,
        plan: str,
        revision: str,
        user_id: str | None = None,
        token_estimate: int = 0,
        checkpoint_count: int = 0,
    ) -> str:
        job_id = str(uuid4())
        self.jobs[job_id] = {
            "id": job_id,
            "thread_id": thread_id,
            "user_id": user_id,
            "title": title,
            "plan": plan,
            "revision": revision,
            "stage": "mapping",
            "status": "running",
            "percent": 0,
            "result": None,
            "token_estimate": token_estimate,
            "checkpoint_count": checkpoint_count,
            "processed_chunks": 0,
        }
        return job_id

    def update_job_progress(self, job_id: str, fields: dict[str, Any]) -> None:
        if self.fail_progress:
            raise RuntimeError("progress table unavailable")
        self.progress_writes.append(dict(fields))
        self.jobs[job_id].update(fields)

    def finalize_job(self, job_id: str, result: str, telemetry: dict[str, Any] | None = None) -> None:
        self.jobs[job_id].update(
            {**(telemetry or {}), "stage": "final", "status": "done", "percent": 100, "result": result}
        )

    def fail_job(self, job_id: str, error_message: str) -> None:
        self.jobs[job_id].update({"status": "failed", "error": error_message})

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        job = self.jobs.get(job_id)
        return dict(job) if job else None

    # Checkpoint operations
    def save_checkpoint(
        self, thread_id: str, title: str, content: str, user_id: str | None = None
    ) -> dict[str, Any]:
        number = 1 + max(
            (c["checkpoint_number"] for c in self.checkpoints if c["thread_id"] == thread_id),
            default=0,
        )
        row = {
            "id": str(uuid4()),
            "thread_id": thread_id,
            "user_id": user_id,
            "checkpoint_number": number,
            "title": title,
            "content": content,
            "quick_summary": content[:700],
            "content_hash": hashlib.sha256(content.encode("utf-8")).hexdigest(),
        }
        self.checkpoints.append(row)
        return row

    def list_checkpoint_summaries(self, thread_id: str, limit: int = 50) -> list[str]:
        rows = sorted(
            (c for c in self.checkpoints if c["thread_id"] == thread_id),
            key=lambda c: c["checkpoint_number"],
        )
        return [c["quick_summary"] for c in rows[:limit]]


# Global fake DB instance
fake_db = FakeDB()
