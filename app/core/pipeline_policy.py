"""Resolve the revision flag into a PipelinePolicy."""

from app.core.config import get_settings
from app.core.logging import get_logger
from app.core.schemas_continuity import PipelinePolicy

logger = get_logger(__name__)

DEFAULT_REVISION = "selective"


def resolve_policy(revision: str | None) -> PipelinePolicy:
    """
    Map a revision name to its policy.

    - map_reduce: no selection, no compression; the whole chunk set is mapped
    - selective: noise filter, topic anchor, MMR selection, compression
    - bounded: selective plus an input token target and an output size cap

    Unknown revisions resolve to the default with a warning.
    """
    settings = get_settings()
    name = (revision or DEFAULT_REVISION).strip().lower()

    base = PipelinePolicy(
        revision="selective",
        anchor_thresholds=settings.anchor_thresholds,
        selection_k=settings.SELECTION_K,
        selection_min=settings.SELECTION_MIN,
        mmr_lambda=settings.MMR_LAMBDA,
    )

    if name == "map_reduce":
        return base.model_copy(
            update={
                "revision": "map_reduce",
                "noise_filter": False,
                "topic_anchor": False,
                "compress": False,
            }
        )

    if name == "bounded":
        return base.model_copy(
            update={
                "revision": "bounded",
                "input_token_target": settings.BOUNDED_INPUT_TOKENS,
                "max_output_tokens": settings.BOUNDED_OUTPUT_TOKENS,
            }
        )

    if name != DEFAULT_REVISION:
        logger.warning(f"Unknown revision '{revision}', using {DEFAULT_REVISION}")
    return base
