"""Conversation checkpoint database operations."""

from typing import Any

from app.core.logging import get_logger
from app.core.text_utils import content_hash
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)

TABLE = "checkpoints"
QUICK_SUMMARY_CHARS = 700


def list_checkpoint_summaries(thread_id: str, limit: int = 50) -> list[str]:
    """
    Quick summaries of a thread's checkpoints, oldest first.

    These feed the recall pool.

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        response = (
            supabase.table(TABLE)
            .select("checkpoint_number, quick_summary")
            .eq("thread_id", thread_id)
            .order("checkpoint_number")
            .limit(limit)
            .execute()
        )
        return [row["quick_summary"] for row in (response.data or []) if row.get("quick_summary")]

    except Exception as e:
        logger.error(f"Failed to list checkpoints for thread {thread_id}: {e}")
        raise


def _next_checkpoint_number(thread_id: str) -> int:
    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .select("checkpoint_number")
        .eq("thread_id", thread_id)
        .order("checkpoint_number", desc=True)
        .limit(1)
        .execute()
    )
    if response.data:
        return int(response.data[0]["checkpoint_number"]) + 1
    return 1


def save_checkpoint(
    thread_id: str,
    title: str,
    content: str,
    user_id: str | None = None,
) -> dict[str, Any]:
    """
    Save a checkpoint with the next per-thread number.

    Args:
        thread_id: Conversation id
        title: Conversation title
        content: Full checkpoint text
        user_id: Optional owning user

    Returns:
        The inserted row (id, checkpoint_number, content_hash, ...)

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        number = _next_checkpoint_number(thread_id)
        response = (
            supabase.table(TABLE)
            .insert(
                {
                    "thread_id": thread_id,
                    "user_id": user_id,
                    "checkpoint_number": number,
                    "title": title,
                    "content": content,
                    "quick_summary": content[:QUICK_SUMMARY_CHARS],
                    "content_hash": content_hash(content),
                }
            )
            .execute()
        )

        if not response.data:
            raise ValueError("No data returned from save_checkpoint")

        row = response.data[0]
        logger.info(
            f"Saved checkpoint {number} for thread {thread_id}",
            extra={"checkpoint_id": str(row.get("id"))},
        )
        return row

    except Exception as e:
        logger.error(f"Failed to save checkpoint for thread {thread_id}: {e}")
        raise
