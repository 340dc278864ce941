"""Selective continuity pipeline as a LangGraph.

8 nodes, one conditional branch:
  select → extract → (compress | skip_compress) → synthesize → enforce
  → deep_context → assemble → score_gate → END

compress is skipped when the policy disables it or the run is already past
its wall-clock checkpoint; the primer is then synthesized straight from the
extractive bullets. Nodes are async and receive the per-run completion
client through the closure built in build_continuity_graph.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, StateGraph

from app.chains.compress_recap import bullets_digest, compress_recap
from app.chains.extract_bullets import extract_all
from app.chains.generate_deep_context import generate_deep_context
from app.chains.repair_handoff import repair_document
from app.chains.repair_next_actions import repair_next_actions
from app.chains.synthesize_primer import synthesize_primer
from app.core.completion import CompletionClient
from app.core.config import Settings, get_settings
from app.core.handoff_render import assemble
from app.core.logging import get_logger
from app.core.primer_schema import enforce_primer_schema
from app.core.quality import gate, score_handoff
from app.core.saliency import select_chunks
from app.core.schemas_continuity import (
    ExtractiveBullet,
    GateDecision,
    PipelinePolicy,
    PrimerBundle,
    QualityScore,
)
from app.core.text_utils import estimate_tokens, fit_to_tokens, truncate_tokens

logger = get_logger(__name__)

ProgressCallback = Callable[[dict[str, Any]], None]

EXTRACT_PCT_START = 10
EXTRACT_PCT_SPAN = 50


# =============================================================================
# State
# =============================================================================


@dataclass
class ContinuityState:
    """State for the selective continuity graph."""

    title: str = "Untitled"
    chunks: list[str] = field(default_factory=list)
    checkpoint_summaries: list[str] = field(default_factory=list)
    policy: PipelinePolicy = field(default_factory=PipelinePolicy)

    # Selection
    selected: list[str] = field(default_factory=list)
    weights: list[float] = field(default_factory=list)
    recall: list[str] = field(default_factory=list)
    selection_stats: dict[str, Any] = field(default_factory=dict)

    # Extraction / compression
    bullets: list[ExtractiveBullet] = field(default_factory=list)
    recap: str = ""
    compress_passes: int = 0
    compress_skipped: bool = False

    # Primer
    raw_primer: dict[str, Any] = field(default_factory=dict)
    primer_model: str | None = None
    bundle: PrimerBundle | None = None
    coverage: float = 0.0
    rows_repaired: int = 0

    # Output
    deep_context: str = ""
    deep_method: str = "none"
    document: str = ""
    tokens_estimate: int = 0
    trimmed: bool = False

    # Quality
    score: QualityScore | None = None
    decision: GateDecision | None = None
    document_repaired: bool = False


@dataclass
class ContinuityOutcome:
    """What the selective variant hands back to the runner."""

    text: str
    passed: bool
    score: QualityScore | None
    reasons: list[str]
    model: str | None
    tokens_estimate: int
    trimmed: bool
    bundle: PrimerBundle | None
    stats: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Graph
# =============================================================================


def build_continuity_graph(
    client: CompletionClient,
    on_progress: ProgressCallback | None = None,
    settings: Settings | None = None,
):
    """Build the selective pipeline graph bound to one run's client."""
    settings = settings or get_settings()
    run = client.run

    def progress(**fields: Any) -> None:
        if on_progress is not None:
            on_progress(fields)

    async def select(state: ContinuityState) -> dict[str, Any]:
        progress(stage="mapping", percent=5)
        result = await select_chunks(
            state.title,
            state.chunks,
            state.policy,
            checkpoint_summaries=state.checkpoint_summaries,
            recall_threshold=settings.RECALL_THRESHOLD,
            recall_max=settings.RECALL_MAX,
            anchor_top_n=settings.ANCHOR_TOP_N,
            anchor_recent_n=settings.ANCHOR_RECENT_N,
            run_id=run.run_id,
        )
        return {
            "selected": result.chunks,
            "weights": result.weights,
            "recall": result.recall,
            "selection_stats": {**result.stats, "embedding_method": result.method},
        }

    async def extract(state: ContinuityState) -> dict[str, Any]:
        progress(stage="mapping", percent=EXTRACT_PCT_START, processed_chunks=0)

        def on_chunk(finished: int, total: int) -> None:
            pct = EXTRACT_PCT_START + int(EXTRACT_PCT_SPAN * finished / max(1, total))
            progress(stage="mapping", percent=pct, processed_chunks=finished)

        result = await extract_all(
            client,
            state.selected,
            state.weights,
            state.recall,
            on_progress=on_chunk,
            settings=settings,
        )
        stats = dict(state.selection_stats)
        stats.update(
            {
                "bullets": len(result.bullets),
                "chunks_failed": result.chunks_failed,
                "recall_extracted": result.recall_used,
            }
        )
        return {"bullets": result.bullets, "selection_stats": stats}

    def route_after_extract(state: ContinuityState) -> str:
        if not state.policy.compress:
            return "skip_compress"
        if run.past_checkpoint(settings.BUDGET_CHECKPOINT_S):
            logger.warning(
                f"Past {settings.BUDGET_CHECKPOINT_S}s checkpoint, skipping compression",
                extra={"run_id": run.run_id, "elapsed_s": round(run.elapsed_s(), 1)},
            )
            return "skip_compress"
        return "compress"

    async def compress(state: ContinuityState) -> dict[str, Any]:
        progress(stage="reduce", percent=65)
        result = await compress_recap(client, state.bullets, state.title, settings)
        return {"recap": result.text, "compress_passes": result.passes}

    async def skip_compress(state: ContinuityState) -> dict[str, Any]:
        progress(stage="reduce", percent=65)
        return {
            "recap": fit_to_tokens(bullets_digest(state.bullets), settings.COMPRESS_CEILING_TOKENS),
            "compress_skipped": True,
        }

    async def synthesize(state: ContinuityState) -> dict[str, Any]:
        progress(stage="reduce", percent=75)
        recap = state.recap
        if not recap.strip():
            # no bullets survived; give the model the selected text itself
            recap = "\n\n".join(truncate_tokens(c, 300) for c in state.selected[:8])
        raw, model = await synthesize_primer(client, state.title, recap, settings)
        return {"raw_primer": raw, "primer_model": model}

    async def enforce(state: ContinuityState) -> dict[str, Any]:
        raw = dict(state.raw_primer)
        repaired = 0
        if raw.get("next_actions") and not run.past_checkpoint(settings.BUDGET_CHECKPOINT_S):
            result = await repair_next_actions(
                client, raw["next_actions"], state.title, state.recap, settings
            )
            raw["next_actions"] = result.rows
            repaired = result.repaired

        bundle, coverage = enforce_primer_schema(raw, state.title, settings.MIN_NEXT_ACTIONS)
        return {"bundle": bundle, "coverage": coverage, "rows_repaired": repaired}

    async def deep_context(state: ContinuityState) -> dict[str, Any]:
        progress(stage="reduce", percent=85)
        result = await generate_deep_context(
            client,
            state.title,
            state.recap,
            state.selected,
            state.bullets,
            skip_llm=run.past_checkpoint(settings.BUDGET_CHECKPOINT_S),
            settings=settings,
        )
        return {"deep_context": result.text, "deep_method": result.method}

    async def assemble_document(state: ContinuityState) -> dict[str, Any]:
        progress(stage="reduce", percent=90)
        handoff = assemble(state.title, state.bundle, state.deep_context, state.policy.max_output_tokens)
        return {
            "document": handoff.text,
            "tokens_estimate": handoff.tokens_estimate,
            "trimmed": handoff.trimmed,
        }

    async def score_gate(state: ContinuityState) -> dict[str, Any]:
        progress(stage="reduce", percent=95)
        score = score_handoff(state.bundle, state.document, state.coverage)
        decision = gate(score, settings.GATE_THRESHOLD)
        if decision.passed:
            return {"score": score, "decision": decision}

        logger.info(
            f"Gate failed at {score.composite:.3f}, repairing document",
            extra={"run_id": run.run_id, "reasons": ",".join(decision.reasons)},
        )
        repaired = await repair_document(client, state.title, state.document, decision.reasons, settings)
        if repaired is None:
            return {"score": score, "decision": decision}

        if state.policy.max_output_tokens:
            repaired = fit_to_tokens(repaired, state.policy.max_output_tokens)
        rescored = score_handoff(state.bundle, repaired, state.coverage)
        redecided = gate(rescored, settings.GATE_THRESHOLD)
        if rescored.composite < score.composite:
            return {"score": score, "decision": decision, "document_repaired": True}
        return {
            "document": repaired,
            "tokens_estimate": estimate_tokens(repaired),
            "score": rescored,
            "decision": redecided,
            "document_repaired": True,
        }

    graph = StateGraph(ContinuityState)

    graph.add_node("select", select)
    graph.add_node("extract", extract)
    graph.add_node("compress", compress)
    graph.add_node("skip_compress", skip_compress)
    graph.add_node("synthesize", synthesize)
    graph.add_node("enforce", enforce)
    graph.add_node("deep_context", deep_context)
    graph.add_node("assemble", assemble_document)
    graph.add_node("score_gate", score_gate)

    graph.set_entry_point("select")
    graph.add_edge("select", "extract")
    graph.add_conditional_edges("extract", route_after_extract)
    graph.add_edge("compress", "synthesize")
    graph.add_edge("skip_compress", "synthesize")
    graph.add_edge("synthesize", "enforce")
    graph.add_edge("enforce", "deep_context")
    graph.add_edge("deep_context", "assemble")
    graph.add_edge("assemble", "score_gate")
    graph.add_edge("score_gate", END)

    return graph.compile()


async def run_continuity_graph(
    client: CompletionClient,
    title: str,
    chunks: list[str],
    policy: PipelinePolicy,
    checkpoint_summaries: list[str] | None = None,
    on_progress: ProgressCallback | None = None,
    settings: Settings | None = None,
) -> ContinuityOutcome:
    """
    Run the selective pipeline end to end.

    Raises:
        PrimerSynthesisError: If the primer stage exhausted every model
    """
    graph = build_continuity_graph(client, on_progress, settings)
    initial_state = ContinuityState(
        title=title or "Untitled",
        chunks=chunks,
        checkpoint_summaries=checkpoint_summaries or [],
        policy=policy,
    )

    result = await graph.ainvoke(initial_state)

    decision: GateDecision | None = result.get("decision")
    score: QualityScore | None = result.get("score")
    stats = dict(result.get("selection_stats") or {})
    stats.update(
        {
            "compress_passes": result.get("compress_passes", 0),
            "compress_skipped": result.get("compress_skipped", False),
            "deep_method": result.get("deep_method"),
            "rows_repaired": result.get("rows_repaired", 0),
            "document_repaired": result.get("document_repaired", False),
            "elapsed_s": round(client.run.elapsed_s(), 2),
            "completion_calls": client.calls,
        }
    )

    logger.info(
        f"Continuity graph finished: composite={score.composite if score else 0:.3f} "
        f"passed={bool(decision and decision.passed)}",
        extra={"run_id": client.run.run_id, "job_id": client.run.job_id},
    )

    return ContinuityOutcome(
        text=result.get("document", ""),
        passed=bool(decision and decision.passed),
        score=score,
        reasons=decision.reasons if decision else [],
        model=result.get("primer_model"),
        tokens_estimate=result.get("tokens_estimate", 0),
        trimmed=result.get("trimmed", False),
        bundle=result.get("bundle"),
        stats=stats,
    )
