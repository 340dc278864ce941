"""Handoff job lifecycle database operations."""

from datetime import UTC, datetime
from typing import Any

from app.core.logging import get_logger
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)

TABLE = "handoff_jobs"


def _utc_now_iso() -> str:
    """Get current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


def create_handoff_job(
    thread_id: str,
    title: str,
    plan: str,
    revision: str,
    user_id: str | None = None,
    token_estimate: int = 0,
    checkpoint_count: int = 0,
) -> str:
    """
    Create a new handoff job record in the mapping stage.

    Args:
        thread_id: Source conversation id
        title: Conversation title
        plan: Caller plan (free or a paid plan name)
        revision: Pipeline variant selector
        user_id: Optional owning user
        token_estimate: Estimated input size, shown while the job runs
        checkpoint_count: Checkpoints available to the recall pool

    Returns:
        Job id

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        response = (
            supabase.table(TABLE)
            .insert(
                {
                    "thread_id": thread_id,
                    "user_id": user_id,
                    "title": title,
                    "plan": plan,
                    "revision": revision,
                    "stage": "mapping",
                    "status": "running",
                    "percent": 0,
                    "token_estimate": token_estimate,
                    "checkpoint_count": checkpoint_count,
                    "processed_chunks": 0,
                    "heartbeat_at": _utc_now_iso(),
                }
            )
            .execute()
        )

        if not response.data:
            raise ValueError("No data returned from create_handoff_job")

        job_id = str(response.data[0]["id"])
        logger.info(
            f"Created handoff job {job_id} for thread {thread_id}",
            extra={"job_id": job_id, "revision": revision},
        )
        return job_id

    except Exception as e:
        logger.error(f"Failed to create handoff job: {e}", extra={"thread_id": thread_id})
        raise


def update_job_progress(job_id: str, fields: dict[str, Any]) -> None:
    """
    Write progress fields (stage, percent, processed_chunks, ...) and a heartbeat.

    Last writer wins; each stage writes only its own fields.

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        supabase.table(TABLE).update({**fields, "heartbeat_at": _utc_now_iso()}).eq(
            "id", job_id
        ).execute()

    except Exception as e:
        logger.error(f"Failed to update job progress: {e}", extra={"job_id": job_id})
        raise


def finalize_job(job_id: str, result: str, telemetry: dict[str, Any] | None = None) -> None:
    """
    Mark a job final/done with its result text and scoring telemetry.

    Args:
        job_id: Job id
        result: Final handoff text
        telemetry: model, token_estimate, continuity_score, action_validity,
            evidence_density, primer_coverage, continuity_fallback, gate_reasons,
            trimmed

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        supabase.table(TABLE).update(
            {
                **(telemetry or {}),
                "stage": "final",
                "status": "done",
                "percent": 100,
                "result": result,
                "heartbeat_at": _utc_now_iso(),
            }
        ).eq("id", job_id).execute()

        logger.info(f"Finalized handoff job {job_id}", extra={"job_id": job_id})

    except Exception as e:
        logger.error(f"Failed to finalize job: {e}", extra={"job_id": job_id})
        raise


def fail_job(job_id: str, error_message: str) -> None:
    """
    Mark a job as failed with error message.

    The stage is left where the pipeline stopped, so pollers never see a
    failed job as final.

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        supabase.table(TABLE).update(
            {
                "status": "failed",
                "error": error_message,
                "heartbeat_at": _utc_now_iso(),
            }
        ).eq("id", job_id).execute()

        logger.info(f"Failed handoff job {job_id}: {error_message}", extra={"job_id": job_id})

    except Exception as e:
        logger.error(f"Failed to update job as failed: {e}", extra={"job_id": job_id})
        raise


def get_job(job_id: str) -> dict[str, Any] | None:
    """
    Get a handoff job by id.

    Returns:
        Job dict or None if not found

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        response = supabase.table(TABLE).select("*").eq("id", job_id).execute()

        if response.data:
            return response.data[0]

        logger.warning(f"Handoff job {job_id} not found")
        return None

    except Exception as e:
        logger.error(f"Failed to get job {job_id}: {e}")
        raise
