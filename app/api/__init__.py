"""API router for v1 endpoints."""

from fastapi import APIRouter

from app.api import checkpoints, handoff

router = APIRouter()

# Handoff job start / status / blocking result
router.include_router(handoff.router, tags=["handoff"])

# Checkpoints (recall pool)
router.include_router(checkpoints.router, tags=["checkpoints"])
