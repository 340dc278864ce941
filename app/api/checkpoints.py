"""API endpoints for conversation checkpoints."""

from fastapi import APIRouter, HTTPException

from app.core.logging import get_logger
from app.core.schemas_continuity import CheckpointSaveRequest, CheckpointSaveResponse
from app.db.checkpoints import save_checkpoint

logger = get_logger(__name__)

router = APIRouter()


@router.post("/checkpoints", response_model=CheckpointSaveResponse)
async def create_checkpoint(request: CheckpointSaveRequest) -> CheckpointSaveResponse:
    """
    Save a checkpoint; its quick summary later feeds the recall pool.

    Raises:
        HTTPException 500: If the checkpoint cannot be saved
    """
    try:
        row = save_checkpoint(
            thread_id=request.thread_id,
            title=request.title,
            content=request.content,
            user_id=request.user_id,
        )
    except Exception as e:
        logger.exception(f"Failed to save checkpoint for thread {request.thread_id}")
        raise HTTPException(status_code=500, detail="Failed to save checkpoint") from e

    return CheckpointSaveResponse(
        id=str(row["id"]),
        checkpoint_number=int(row["checkpoint_number"]),
        content_hash=row.get("content_hash") or "",
    )
