"""Handoff job runner: ordered pipeline variants behind one interface.

The runner tries each PipelineVariant in order with the same input. A
variant that does not accept its own output (quality gate failed) or raises
ContinuityError yields to the next; the last variant's output is accepted
unconditionally. The reason for every hand-over is recorded on the job as
continuity_fallback telemetry, never surfaced as a user-facing error.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.core.completion import CompletionClient
from app.core.config import Settings, get_settings
from app.core.errors import ContinuityError
from app.core.logging import get_logger
from app.core.pipeline_policy import resolve_policy
from app.core.run_context import RunContext
from app.core.schemas_continuity import PipelinePolicy
from app.db.jobs import fail_job, finalize_job, update_job_progress
from app.graphs.continuity_graph import run_continuity_graph
from app.graphs.map_reduce_graph import run_map_reduce_graph

logger = get_logger(__name__)

NO_INPUT_RESULT = "(no input)"

ProgressCallback = Callable[[dict[str, Any]], None]


@dataclass
class HandoffInput:
    """Everything a variant needs to run."""

    job_id: str
    title: str
    thread_id: str
    chunks: list[str]
    plan: str = "free"
    revision: str | None = None
    user_id: str | None = None
    checkpoint_summaries: list[str] = field(default_factory=list)


@dataclass
class VariantResult:
    accepted: bool
    result: str
    meta: dict[str, Any] = field(default_factory=dict)
    fallback_reason: str | None = None


class PipelineVariant(Protocol):
    name: str

    async def run(
        self, inp: HandoffInput, client: CompletionClient, on_progress: ProgressCallback
    ) -> VariantResult: ...


class SelectiveVariant:
    """Select → extract → compress → synthesize → enforce → assemble → gate."""

    def __init__(self, policy: PipelinePolicy, settings: Settings | None = None):
        self.policy = policy
        self.settings = settings or get_settings()
        self.name = policy.revision

    async def run(
        self, inp: HandoffInput, client: CompletionClient, on_progress: ProgressCallback
    ) -> VariantResult:
        outcome = await run_continuity_graph(
            client,
            inp.title,
            inp.chunks,
            self.policy,
            checkpoint_summaries=inp.checkpoint_summaries,
            on_progress=on_progress,
            settings=self.settings,
        )
        score = outcome.score
        meta = {
            "model": outcome.model,
            "token_estimate": outcome.tokens_estimate,
            "continuity_score": round(score.composite, 4) if score else None,
            "action_validity": round(score.action_validity, 4) if score else None,
            "evidence_density": round(score.evidence_density, 4) if score else None,
            "primer_coverage": round(score.primer_coverage, 4) if score else None,
            "gate_reasons": outcome.reasons,
            "trimmed": outcome.trimmed,
            "stats": outcome.stats,
        }
        reason = None
        if not outcome.passed:
            composite = score.composite if score else 0.0
            reason = f"{self.name}:gate:{composite:.3f}:{','.join(outcome.reasons) or 'score'}"
        return VariantResult(
            accepted=outcome.passed,
            result=outcome.text,
            meta=meta,
            fallback_reason=reason,
        )


class MapReduceVariant:
    """Plain map-reduce over every chunk; always accepts its own output."""

    name = "map_reduce"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def run(
        self, inp: HandoffInput, client: CompletionClient, on_progress: ProgressCallback
    ) -> VariantResult:
        outcome = await run_map_reduce_graph(
            client,
            inp.title,
            inp.chunks,
            paid=self.settings.is_paid(inp.plan),
            on_progress=on_progress,
            settings=self.settings,
        )
        return VariantResult(
            accepted=True,
            result=outcome.text,
            meta={
                "model": outcome.model,
                "token_estimate": outcome.tokens_estimate,
                "evidence_density": round(outcome.evidence_density, 4),
                "stats": outcome.stats,
            },
        )


def variants_for(revision: str | None, settings: Settings | None = None) -> list[PipelineVariant]:
    """Variant order for a revision: the requested pipeline, then map-reduce."""
    policy = resolve_policy(revision)
    if policy.revision == "map_reduce":
        return [MapReduceVariant(settings)]
    return [SelectiveVariant(policy, settings), MapReduceVariant(settings)]


class HandoffRunner:
    """Runs one handoff job to a terminal state."""

    def __init__(
        self,
        variants: list[PipelineVariant] | None = None,
        settings: Settings | None = None,
        seed: int | None = None,
    ):
        self.settings = settings or get_settings()
        self._variants = variants
        self.seed = seed

    def _progress_writer(self, job_id: str) -> ProgressCallback:
        """Best-effort progress writes with a percent that never goes backwards."""
        last_percent = 0

        def write(fields: dict[str, Any]) -> None:
            nonlocal last_percent
            update = dict(fields)
            if "percent" in update:
                last_percent = max(last_percent, int(update["percent"]))
                update["percent"] = last_percent
            try:
                update_job_progress(job_id, update)
            except Exception as e:
                logger.warning(f"Progress update skipped: {e}", extra={"job_id": job_id})

        return write

    async def run(self, inp: HandoffInput) -> VariantResult | None:
        """
        Run variants in order and finalize the job.

        Returns:
            The accepted VariantResult, or None when every variant raised
            (the job is then marked failed)
        """
        if not inp.chunks:
            finalize_job(inp.job_id, NO_INPUT_RESULT, {"token_estimate": 0})
            logger.info("No input chunks, finalized immediately", extra={"job_id": inp.job_id})
            return VariantResult(accepted=True, result=NO_INPUT_RESULT)

        variants = self._variants or variants_for(inp.revision, self.settings)
        run = RunContext.from_settings(job_id=inp.job_id, seed=self.seed)
        client = CompletionClient(run, plan=inp.plan, settings=self.settings)
        progress = self._progress_writer(inp.job_id)

        fallbacks: list[str] = []
        for i, variant in enumerate(variants):
            last = i == len(variants) - 1
            try:
                result = await variant.run(inp, client, progress)
            except ContinuityError as e:
                fallbacks.append(f"{variant.name}:error:{type(e).__name__}")
                logger.warning(
                    f"Variant {variant.name} failed: {e}",
                    extra={"run_id": run.run_id, "job_id": inp.job_id},
                )
                continue

            if result.accepted or last:
                if not result.accepted and result.fallback_reason:
                    fallbacks.append(result.fallback_reason)
                self._finalize(inp.job_id, result, fallbacks)
                return result

            fallbacks.append(result.fallback_reason or f"{variant.name}:rejected")
            logger.warning(
                f"Variant {variant.name} rejected, falling back",
                extra={
                    "run_id": run.run_id,
                    "job_id": inp.job_id,
                    "continuity_fallback": fallbacks[-1],
                },
            )

        message = "All pipeline variants failed: " + "; ".join(fallbacks)
        fail_job(inp.job_id, message)
        return None

    def _finalize(self, job_id: str, result: VariantResult, fallbacks: list[str]) -> None:
        meta = {k: v for k, v in result.meta.items() if k != "stats"}
        meta["continuity_fallback"] = "; ".join(fallbacks) or None
        finalize_job(job_id, result.result, meta)
        if fallbacks:
            logger.info(
                f"Job finalized after fallback: {meta['continuity_fallback']}",
                extra={"job_id": job_id, "continuity_fallback": meta["continuity_fallback"]},
            )


async def run_handoff_job(inp: HandoffInput, runner: HandoffRunner | None = None) -> None:
    """Background-task entry point: any unexpected error marks the job failed."""
    runner = runner or HandoffRunner()
    try:
        await runner.run(inp)
    except Exception as e:
        logger.exception(f"Handoff job crashed: {e}", extra={"job_id": inp.job_id})
        try:
            fail_job(inp.job_id, f"{type(e).__name__}: {e}")
        except Exception:
            logger.exception("Could not mark job failed", extra={"job_id": inp.job_id})
