"""Map-reduce continuity pipeline (conservative fallback variant).

No selection and no compression: every chunk is mapped.

5 nodes:
  coalesce → map_chunks → reduce → evidence_pass → (refine | END)

refine runs only for paid plans. Past the wall-clock target the evidence pass
and refine are skipped. The variant always returns some text: when
the reduce chain is exhausted the map notes themselves become the document.
"""

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, StateGraph

from app.core.async_pool import run_pooled
from app.core.completion import CompletionClient, CompletionResult
from app.core.config import Settings, get_settings, parse_model_chain
from app.core.errors import CompletionError
from app.core.handoff_render import clean_deep_context, compose_document
from app.core.llm import try_parse_llm_json_dict
from app.core.logging import get_logger
from app.core.quality import evidence_density, generic_score
from app.core.text_utils import SOURCE_TAG_RE, estimate_tokens, scrub_placeholders, truncate_tokens

logger = get_logger(__name__)

ProgressCallback = Callable[[dict[str, Any]], None]

# ruff: noqa: E501
MAP_JSON_PROMPT = """Extract ONLY what is explicitly present in the segment. Output strict JSON, no markdown.
Optional keys (omit empty ones):
{"objectives": [str], "facts": [{"text": str, "quote": str}], "decisions": [{"text": str, "quote": str}], "risks": [str], "next_actions": [str], "terms": [str]}
Every fact and decision carries a short direct quote (at most 120 chars) from the segment. Keep each string under 28 words. Do not invent; skip what is unsure."""

MAP_BULLETS_PROMPT = """You are a precise mapper. Write up to 6 short bullet lines covering objectives, facts, decisions, risks, next actions and terms found in the segment.
One compact line per bullet. Skip missing categories; never write placeholders."""

REDUCE_PROMPT = """Merge the numbered segment notes into a continuity handoff.
Use only information traceable to the segments; cite them as [S#] with # in 1..{n}. Never invent numbers, file names or dates.
If a section lacks evidence write "Insufficient evidence [S#]".

OUTPUT FORMAT (strict):
=== PRIMER ===
Context recap (one paragraph), Key Facts, Decisions (most recent first), Active Work, Open Questions,
Next Actions table: action | owner | deps | effort(h) | impact(▲/▼) | rollback | evidence
(owner one of Founder, Product, Engineering, Design, Research, Growth, Ops, Legal, Data).
=== DEEP CONTEXT ===
Facts & Data; Decisions & Rationale; Constraints & Guardrails; Open Questions & Assumptions; Tests; Glossary.
Every important factual bullet has an [S#] tag and, when useful, a short quote.
Each marker appears exactly once. Target {words} words."""

EVIDENCE_PROMPT = """Add inline [S#] evidence markers (# in 1..{n}) and short quotes to the important factual statements of this text.
Do not invent; mark unsupported statements "Insufficient evidence". Keep length roughly the same. Return only the text."""

REFINE_PROMPT = """You are an executive editor. Enforce structure, clarity and completeness without adding new facts.
Keep section headings and every [S#] marker. Tighten Next Actions with clear rollback and ordering. Return only the document."""

MIN_MAP_CHARS = 60
FALLBACK_RAW_CHUNKS = 8

_PRIMER_MARKER = re.compile(r"={3}\s*PRIMER\s*={3}", re.IGNORECASE)
_DEEP_MARKER = re.compile(r"={3}\s*DEEP CONTEXT\s*={3}", re.IGNORECASE)


# =============================================================================
# Helpers
# =============================================================================


def coalesce(chunks: list[str]) -> list[str]:
    """Group neighbours to cut call count on long threads (4 >140, 3 >100, 2 >60)."""
    n = len(chunks)
    if n > 140:
        group = 4
    elif n > 100:
        group = 3
    elif n > 60:
        group = 2
    else:
        return list(chunks)
    return ["\n\n".join(chunks[i : i + group]) for i in range(0, n, group)]


def map_concurrency(plan_is_paid: bool, settings: Settings) -> int:
    upper = settings.MAP_CONCURRENCY_PAID_MAX if plan_is_paid else settings.MAP_CONCURRENCY_FREE_MAX
    return max(1, min(upper, settings.MAP_CONCURRENCY))


def notes_from_json(data: dict[str, Any]) -> str:
    """Flatten JSON map output into bullet lines."""
    lines = []
    for key in ("objectives", "facts", "decisions", "risks", "next_actions", "terms"):
        items = data.get(key)
        if not isinstance(items, list):
            continue
        label = key.replace("_", " ").capitalize()
        for item in items:
            if isinstance(item, dict):
                text = str(item.get("text") or "").strip()
                quote = str(item.get("quote") or "").strip()
                if text:
                    lines.append(f"- {label}: {text}" + (f' ("{quote}")' if quote else ""))
            elif str(item or "").strip():
                lines.append(f"- {label}: {str(item).strip()}")
    return "\n".join(lines)


def split_sections(text: str) -> tuple[str, str]:
    """(primer, deep) from marker-delimited reduce output; unmarked text is all deep."""
    primer_match = _PRIMER_MARKER.search(text)
    deep_match = _DEEP_MARKER.search(text)
    if primer_match and deep_match and primer_match.start() < deep_match.start():
        return text[primer_match.end() : deep_match.start()].strip(), text[deep_match.end() :].strip()
    if deep_match:
        return _PRIMER_MARKER.sub("", text[: deep_match.start()]).strip(), text[deep_match.end() :].strip()
    if primer_match:
        return text[primer_match.end() :].strip(), ""
    return "", text.strip()


def numbered(segments: list[str], max_tokens: int = 500) -> str:
    return "\n\n".join(f"[S{i + 1}] {truncate_tokens(s, max_tokens)}" for i, s in enumerate(segments))


def notes_digest(notes: list[str]) -> str:
    """Deterministic deep context: every note line tagged with its segment."""
    lines = []
    for i, note in enumerate(notes):
        for line in note.splitlines():
            line = line.strip().lstrip("-•* ").strip()
            if line:
                lines.append(f"- {line} [S{i + 1}]")
    return "\n".join(lines)


# =============================================================================
# State
# =============================================================================


@dataclass
class MapReduceState:
    """State for the map-reduce graph."""

    title: str = "Untitled"
    chunks: list[str] = field(default_factory=list)
    paid: bool = False

    groups: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    maps_failed: int = 0

    document: str = ""
    reduce_model: str | None = None
    reduce_failed: bool = False
    evidence_added: bool = False
    refined: bool = False


@dataclass
class MapReduceOutcome:
    text: str
    model: str | None
    tokens_estimate: int
    evidence_density: float
    generic_score: float
    stats: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Graph
# =============================================================================


def build_map_reduce_graph(
    client: CompletionClient,
    on_progress: ProgressCallback | None = None,
    settings: Settings | None = None,
):
    """Build the map-reduce graph bound to one run's client."""
    settings = settings or get_settings()
    run = client.run
    run_id = run.run_id

    def progress(**fields: Any) -> None:
        if on_progress is not None:
            on_progress(fields)

    def models(state: MapReduceState, phase: str) -> list[str]:
        if phase == "map":
            raw = settings.MAP_MODELS_PAID if state.paid else settings.MAP_MODELS
        else:
            raw = settings.REDUCE_MODELS_PAID if state.paid else settings.REDUCE_MODELS
        return parse_model_chain(raw)

    async def _call(
        chain: list[str], system: str, user: str, max_tokens: int, timeout: float
    ) -> CompletionResult | None:
        try:
            result = await asyncio.wait_for(
                client.complete(
                    chain,
                    [{"role": "system", "content": system}, {"role": "user", "content": user}],
                    max_tokens=max_tokens,
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except (TimeoutError, CompletionError) as e:
            logger.warning(f"Map-reduce call failed: {e!r}", extra={"run_id": run_id})
            return None
        return result

    async def coalesce_chunks(state: MapReduceState) -> dict[str, Any]:
        groups = coalesce(state.chunks)
        progress(stage="mapping", percent=5, processed_chunks=0, map_pct=0)
        return {"groups": groups}

    async def map_chunks(state: MapReduceState) -> dict[str, Any]:
        chain = models(state, "map")
        total = len(state.groups)

        async def _map(i: int, segment: str) -> str:
            user = f"SEGMENT:\n{segment}"
            result = await _call(chain, MAP_JSON_PROMPT, user, 640, settings.MAP_TIMEOUT_S)
            data = try_parse_llm_json_dict(result.content) if result else None
            if data:
                notes = notes_from_json(data)
                if len(notes) >= MIN_MAP_CHARS:
                    return notes

            result = await _call(chain, MAP_BULLETS_PROMPT, user, 480, settings.MAP_TIMEOUT_S)
            out = result.content.strip() if result else ""
            if len(out) >= MIN_MAP_CHARS and out.count("\n") >= 2:
                return scrub_placeholders(out)
            return ""

        def _done(finished: int) -> None:
            map_pct = min(100, round(finished / max(1, total) * 100))
            progress(
                stage="mapping",
                processed_chunks=finished,
                map_pct=map_pct,
                percent=5 + round(map_pct * 0.6),
            )

        results = await run_pooled(
            state.groups, _map, map_concurrency(state.paid, settings), _done
        )
        notes = [r for r in results if r]
        return {"notes": notes, "maps_failed": total - len(notes)}

    async def reduce(state: MapReduceState) -> dict[str, Any]:
        progress(stage="reduce", percent=70)
        segments = state.notes or [
            truncate_tokens(c, 250) for c in state.chunks[:FALLBACK_RAW_CHUNKS]
        ]
        words = "1000-1500" if state.paid else "650-950"
        system = REDUCE_PROMPT.format(n=len(segments), words=words)
        user = f"Title: {state.title}\n\nSegments:\n{numbered(segments)}"

        max_tokens = 3200 if state.paid else 1400
        result = await _call(models(state, "reduce"), system, user, max_tokens, settings.REDUCE_TIMEOUT_S)
        if result:
            primer, deep = split_sections(result.content)
            return {
                "document": compose_document(state.title, scrub_placeholders(primer), clean_deep_context(deep)),
                "reduce_model": result.model,
            }

        logger.warning("Reduce exhausted its chain, using map notes", extra={"run_id": run_id})
        deep = notes_digest(segments)
        return {
            "document": compose_document(state.title, "", deep),
            "reduce_failed": True,
        }

    async def evidence_pass(state: MapReduceState) -> dict[str, Any]:
        progress(stage="reduce", percent=85)
        if state.reduce_failed or SOURCE_TAG_RE.search(state.document):
            return {}
        if run.past_checkpoint(settings.BUDGET_TARGET_S):
            logger.info(
                f"Past {settings.BUDGET_TARGET_S}s target, skipping evidence pass",
                extra={"run_id": run_id},
            )
            return {}
        n = max(1, len(state.notes))
        result = await _call(
            models(state, "reduce"),
            EVIDENCE_PROMPT.format(n=n),
            f"Segments:\n{numbered(state.notes, 200)}\n\n--- TEXT ---\n{state.document}",
            1600,
            settings.REDUCE_TIMEOUT_S,
        )
        if result and SOURCE_TAG_RE.search(result.content):
            return {"document": scrub_placeholders(result.content.strip()), "evidence_added": True}
        return {}

    def route_after_evidence(state: MapReduceState) -> str:
        if not state.paid or state.reduce_failed:
            return END
        if run.past_checkpoint(settings.BUDGET_TARGET_S):
            return END
        return "refine"

    async def refine(state: MapReduceState) -> dict[str, Any]:
        progress(stage="reduce", percent=92)
        result = await _call(
            models(state, "reduce"),
            REFINE_PROMPT,
            f"Title: {state.title}\n\n--- DRAFT ---\n{state.document}\n--- END DRAFT ---",
            1600,
            settings.REDUCE_TIMEOUT_S,
        )
        if result:
            return {"document": scrub_placeholders(result.content.strip()), "refined": True}
        return {}

    graph = StateGraph(MapReduceState)

    graph.add_node("coalesce", coalesce_chunks)
    graph.add_node("map_chunks", map_chunks)
    graph.add_node("reduce", reduce)
    graph.add_node("evidence_pass", evidence_pass)
    graph.add_node("refine", refine)

    graph.set_entry_point("coalesce")
    graph.add_edge("coalesce", "map_chunks")
    graph.add_edge("map_chunks", "reduce")
    graph.add_edge("reduce", "evidence_pass")
    graph.add_conditional_edges("evidence_pass", route_after_evidence)
    graph.add_edge("refine", END)

    return graph.compile()


async def run_map_reduce_graph(
    client: CompletionClient,
    title: str,
    chunks: list[str],
    paid: bool = False,
    on_progress: ProgressCallback | None = None,
    settings: Settings | None = None,
) -> MapReduceOutcome:
    """Run the map-reduce variant; never raises for provider failures."""
    graph = build_map_reduce_graph(client, on_progress, settings)
    result = await graph.ainvoke(MapReduceState(title=title or "Untitled", chunks=chunks, paid=paid))

    text = result.get("document", "")
    stats = {
        "groups": len(result.get("groups") or []),
        "maps_failed": result.get("maps_failed", 0),
        "reduce_failed": result.get("reduce_failed", False),
        "evidence_added": result.get("evidence_added", False),
        "refined": result.get("refined", False),
        "completion_calls": client.calls,
    }
    logger.info(
        f"Map-reduce finished over {len(chunks)} chunks",
        extra={"run_id": client.run.run_id, "job_id": client.run.job_id, **stats},
    )
    return MapReduceOutcome(
        text=text,
        model=result.get("reduce_model"),
        tokens_estimate=estimate_tokens(text),
        evidence_density=evidence_density(text),
        generic_score=generic_score(text),
        stats=stats,
    )
