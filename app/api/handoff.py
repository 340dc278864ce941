"""API endpoints for continuity handoff jobs."""

import asyncio
import time
from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException

from app.core.chunking import chunk_messages, chunk_text
from app.core.config import get_settings
from app.core.errors import ResultTimeoutError
from app.core.logging import get_logger
from app.core.pipeline_policy import resolve_policy
from app.core.schemas_continuity import (
    HandoffResultResponse,
    HandoffStartRequest,
    HandoffStartResponse,
    HandoffStatusResponse,
)
from app.core.text_utils import estimate_tokens
from app.db.checkpoints import list_checkpoint_summaries
from app.db.jobs import create_handoff_job, get_job
from app.services.handoff_runner import HandoffInput, HandoffRunner, run_handoff_job

logger = get_logger(__name__)

router = APIRouter()

STABLE_READS = 2


@router.post("/handoff/start", response_model=HandoffStartResponse)
async def start_handoff(
    request: HandoffStartRequest, background_tasks: BackgroundTasks
) -> HandoffStartResponse:
    """
    Start a handoff job.

    Raw messages are smart-chunked when no chunks are given, and a raw
    transcript is split into character windows when neither is. Zero chunks
    finalize immediately with the "(no input)" result; anything else runs
    the pipeline as a background task.

    Raises:
        HTTPException 500: If the job cannot be created
    """
    chunks = [c for c in request.chunks if c and c.strip()]
    if not chunks and request.messages:
        chunks = chunk_messages([m.model_dump() for m in request.messages])
    if not chunks and request.text:
        chunks = [c for c in chunk_text(request.text) if c.strip()]

    policy = resolve_policy(request.revision)

    try:
        summaries = list_checkpoint_summaries(request.thread_id)
    except Exception as e:
        logger.warning(f"Recall pool unavailable, continuing without it: {e}")
        summaries = []

    token_estimate = estimate_tokens("\n\n".join(chunks))

    try:
        job_id = create_handoff_job(
            thread_id=request.thread_id,
            title=request.title,
            plan=request.plan,
            revision=policy.revision,
            user_id=request.user_id,
            token_estimate=token_estimate,
            checkpoint_count=len(summaries),
        )
    except Exception as e:
        logger.exception("Failed to create handoff job")
        raise HTTPException(status_code=500, detail="Failed to create handoff job") from e

    inp = HandoffInput(
        job_id=job_id,
        title=request.title,
        thread_id=request.thread_id,
        chunks=chunks,
        plan=request.plan,
        revision=policy.revision,
        user_id=request.user_id,
        checkpoint_summaries=summaries,
    )

    if chunks:
        background_tasks.add_task(run_handoff_job, inp)
    else:
        await HandoffRunner().run(inp)

    meta: dict[str, Any] = {
        "revision": policy.revision,
        "plan": request.plan,
        "chunks": len(chunks),
        "token_estimate": token_estimate,
        "checkpoint_count": len(summaries),
    }
    logger.info(
        f"Started handoff job {job_id} over {len(chunks)} chunks",
        extra={"job_id": job_id, **meta},
    )
    return HandoffStartResponse(job_id=job_id, meta=meta)


@router.get("/handoff/status/{job_id}", response_model=HandoffStatusResponse)
async def get_handoff_status(job_id: str) -> HandoffStatusResponse:
    """
    Poll a job. Read-only, safe at sub-second frequency.

    Raises:
        HTTPException 404: If job not found
        HTTPException 500: If database error
    """
    try:
        job = get_job(job_id)
    except Exception as e:
        logger.exception(f"Failed to get job {job_id}")
        raise HTTPException(status_code=500, detail="Failed to retrieve job status") from e

    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    result = job.get("result")
    return HandoffStatusResponse(
        job_id=job_id,
        stage=job.get("stage") or "mapping",
        status=job.get("status") or "running",
        percent=int(job.get("percent") or 0),
        has_result=bool(result),
        result=result,
    )


async def wait_for_final_result(job_id: str) -> dict[str, Any]:
    """
    Poll until the job is final and its result length is stable across reads.

    Raises:
        HTTPException 404: If job not found
        HTTPException 500: If the job failed
        ResultTimeoutError: If the cap elapses first
    """
    settings = get_settings()
    started = time.monotonic()
    last_length: int | None = None
    stable = 0

    while True:
        job = get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        if job.get("status") == "failed":
            raise HTTPException(status_code=500, detail=job.get("error") or "Handoff failed")

        result = job.get("result") or ""
        if job.get("stage") == "final" and result:
            stable = stable + 1 if len(result) == last_length else 1
            last_length = len(result)
            if stable >= STABLE_READS:
                return job

        waited = time.monotonic() - started
        if waited >= settings.RESULT_TIMEOUT_S:
            raise ResultTimeoutError(job_id, waited)
        await asyncio.sleep(settings.RESULT_POLL_INTERVAL_S)


@router.get("/handoff/result/{job_id}", response_model=HandoffResultResponse)
async def get_handoff_result(job_id: str) -> HandoffResultResponse:
    """
    Blocking fetch of the full result text.

    Raises:
        HTTPException 404: If job not found
        HTTPException 500: If the job failed
        HTTPException 504: If the job is still running after the cap
    """
    try:
        job = await wait_for_final_result(job_id)
    except ResultTimeoutError as e:
        logger.warning(str(e), extra={"job_id": job_id})
        raise HTTPException(status_code=504, detail=str(e)) from e

    meta_keys = (
        "model",
        "token_estimate",
        "checkpoint_count",
        "continuity_score",
        "action_validity",
        "evidence_density",
        "primer_coverage",
        "continuity_fallback",
        "trimmed",
    )
    return HandoffResultResponse(
        job_id=job_id,
        stage=job["stage"],
        status=job.get("status") or "done",
        result=job["result"],
        meta={k: job.get(k) for k in meta_keys if k in job},
    )
