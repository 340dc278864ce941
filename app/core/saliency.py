"""
Saliency selection: which chunks are worth sending to the extractive pass.

Stages (each optional per PipelinePolicy):
1. Noise filter (pasted prompts, code fences, tooling chatter)
2. Topic anchor filter (similarity to title + opening of the thread)
3. Maximal Marginal Relevance selection biased toward the title vector

Also ranks checkpoint summaries into the recall pool used to backfill thin
extraction.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from app.core.embeddings import embed_with_fallback
from app.core.logging import get_logger
from app.core.schemas_continuity import PipelinePolicy
from app.core.text_utils import estimate_tokens, normalize

logger = get_logger(__name__)

CATEGORY_WEIGHTS: dict[str, float] = {
    "decisions": 1.3,
    "facts": 1.15,
    "constraints": 1.1,
    "asks": 1.05,
    "artifacts": 1.0,
}

_CATEGORY_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("decisions", re.compile(r"decided|decision|choose|chose|approved|agreed|going with|onay|karar")),
    ("facts", re.compile(r"fact|data|metric|measured|evidence|kanıt|\bveri\b|\bveriler|ölçüm")),
    ("constraints", re.compile(r"constraint|limit|blocked|risk|deadline|must not|kısıt|sınır|engel")),
    ("asks", re.compile(r"\bask|question|need|todo|soru|istek|talep|\?")),
    ("artifacts", re.compile(r"code|snippet|artifact|repo|file|script|dosya|\bkod")),
]

_TUTORIAL_RE = re.compile(r"tutorial|how to|guide|step by step|öğretici|adım adım")
_SMALLTALK_RE = re.compile(r"\b(thanks|thank you|hello|hi there|good morning|teşekkür\w*|selam|günaydın)\b")

_META_RE = re.compile(r"^```[\s\S]*?```$|^(Copy code|Task:|SCOPE:|ROLE:|BANS:)", re.IGNORECASE)
_TECH_RE = re.compile(
    r"\b(SUPERPROMPT|STRICT JSON|schema|ROLE:|SCOPE|BANS|Validators|Diff|Acceptance:)",
    re.IGNORECASE,
)
_HANDOFF_ECHO_RE = re.compile(r"=== PRIMER ===|continuity handoff.*non-negotiable", re.IGNORECASE | re.DOTALL)

ANCHOR_TITLE_CHARS = 200
ANCHOR_MAX_CHARS = 300


@dataclass
class Candidate:
    """A chunk scored for selection."""

    text: str
    vector: list[float]
    base_weight: float = 1.0
    index: int = 0


@dataclass
class SelectionResult:
    """Chunks chosen for extraction plus the recall pool and telemetry."""

    chunks: list[str] = field(default_factory=list)
    weights: list[float] = field(default_factory=list)
    recall: list[str] = field(default_factory=list)
    method: str = "none"
    stats: dict[str, Any] = field(default_factory=dict)


def heuristic_category(text: str) -> str:
    """Classify text into decisions/facts/constraints/asks/artifacts (facts by default)."""
    lowered = text.lower()
    for category, pattern in _CATEGORY_PATTERNS:
        if pattern.search(lowered):
            return category
    return "facts"


def category_weight(category: str) -> float:
    return CATEGORY_WEIGHTS.get(category, 1.0)


def noise_penalty(text: str) -> float:
    """Multiplicative discount: tutorial x0.8, small talk x0.85."""
    lowered = text.lower()
    penalty = 1.0
    if _TUTORIAL_RE.search(lowered):
        penalty *= 0.8
    if _SMALLTALK_RE.search(lowered):
        penalty *= 0.85
    return penalty


def base_weight(text: str) -> float:
    return category_weight(heuristic_category(text)) * noise_penalty(text)


def _unit(vec: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vec))
    return vec / norm if norm > 0 else vec


def mmr_select(
    candidates: list[Candidate],
    k: int,
    lam: float = 0.72,
    query_vector: list[float] | None = None,
) -> list[Candidate]:
    """
    Greedy Maximal Marginal Relevance.

    score(c) = lam * cos(c, query) * c.base_weight - (1 - lam) * max cos(c, selected)

    The query is query_vector when its dimension matches, else the normalized
    centroid of all candidates. Ties go to the earlier candidate. Returns
    min(len(candidates), k) candidates in selection order.

    Args:
        candidates: Candidates with equal-length vectors
        k: Maximum selection size
        lam: Relevance vs diversity tradeoff
        query_vector: Optional query (e.g., title embedding)

    Returns:
        Selected candidates, most valuable first
    """
    if k <= 0 or not candidates:
        return []
    if len(candidates) <= k:
        return list(candidates)

    matrix = np.array([c.vector for c in candidates], dtype=float)
    weights = np.array([c.base_weight for c in candidates], dtype=float)

    if query_vector is not None and len(query_vector) == matrix.shape[1]:
        query = _unit(np.array(query_vector, dtype=float))
    else:
        query = _unit(matrix.sum(axis=0))

    relevance = cosine_similarity(matrix, query.reshape(1, -1))[:, 0] * weights
    pairwise = cosine_similarity(matrix)

    redundancy = np.zeros(len(candidates))
    used = np.zeros(len(candidates), dtype=bool)
    selected: list[int] = []

    while len(selected) < k:
        scores = lam * relevance - (1 - lam) * redundancy
        scores[used] = -np.inf
        best = int(np.argmax(scores))
        if used[best]:
            break
        selected.append(best)
        used[best] = True
        redundancy = np.maximum(redundancy, pairwise[best])

    return [candidates[i] for i in selected]


def filter_noise(chunks: list[str]) -> list[int]:
    """Indices of chunks that are not pasted prompts, code fences or handoff echoes."""
    kept = []
    for i, chunk in enumerate(chunks):
        text = chunk.strip()
        if _META_RE.search(text) or _TECH_RE.search(text) or _HANDOFF_ECHO_RE.search(text):
            continue
        kept.append(i)
    return kept


def build_anchor(title: str, chunks: list[str]) -> str:
    first = chunks[0].lower()[:ANCHOR_TITLE_CHARS] if chunks else ""
    return f"{(title or '').lower()} {first}"[:ANCHOR_MAX_CHARS].strip()


def topic_anchor_filter(
    similarities: list[float],
    thresholds: list[float],
    min_keep: int,
    top_n: int = 15,
    recent_n: int = 15,
    cap: int = 30,
) -> tuple[list[int], float]:
    """
    Keep chunks on the thread's topic.

    Thresholds are relaxed in order while fewer than min_keep pass. If still
    short, take the union of the top_n most anchor-similar and the recent_n
    most recent chunks, capped. Returned indices are in source order.
    """
    n = len(similarities)
    if n == 0:
        return [], thresholds[0] if thresholds else 0.0

    threshold = thresholds[0] if thresholds else 0.0
    kept = [i for i, s in enumerate(similarities) if s >= threshold]
    for relaxed in thresholds[1:]:
        if len(kept) >= min_keep:
            break
        threshold = relaxed
        kept = [i for i, s in enumerate(similarities) if s >= threshold]

    if len(kept) < min_keep:
        ranked = sorted(range(n), key=lambda i: (-similarities[i], i))[:top_n]
        recent = list(range(max(0, n - recent_n), n))
        union: list[int] = []
        for i in ranked + recent:
            if i not in union:
                union.append(i)
        kept = sorted(union[:cap])

    return kept, threshold


def pick_recall(
    summaries: list[str],
    vectors: list[list[float]],
    anchor_vector: list[float],
    threshold: float,
    limit: int,
) -> list[str]:
    """Checkpoint summaries most similar to the anchor, best first."""
    if not summaries or not vectors:
        return []
    sims = cosine_similarity(np.array(vectors, dtype=float), np.array([anchor_vector], dtype=float))[:, 0]
    ranked = sorted(range(len(summaries)), key=lambda i: (-sims[i], i))
    return [summaries[i] for i in ranked if sims[i] >= threshold][:limit]


def selection_k(policy: PipelinePolicy, texts: list[str]) -> int:
    """k for MMR; the bounded variant shrinks it to fit the input token target."""
    k = min(policy.selection_k, max(1, len(texts)))
    if policy.input_token_target and texts:
        avg = sum(estimate_tokens(t) for t in texts) / len(texts) or 1
        k = max(1, min(policy.selection_k, math.floor(policy.input_token_target / avg)))
    return k


async def select_chunks(
    title: str,
    chunks: list[str],
    policy: PipelinePolicy,
    checkpoint_summaries: list[str] | None = None,
    recall_threshold: float = 0.32,
    recall_max: int = 12,
    anchor_top_n: int = 15,
    anchor_recent_n: int = 15,
    run_id: str | None = None,
) -> SelectionResult:
    """
    Run noise filter, topic anchor and MMR over the chunk list.

    Selected chunks are returned in source order. Embedding failures never
    raise: embed_with_fallback degrades to hashed vectors.
    """
    summaries = [s for s in (checkpoint_summaries or []) if s and s.strip()]
    stats: dict[str, Any] = {"input_chunks": len(chunks)}

    pool = list(range(len(chunks)))
    if policy.noise_filter:
        kept = filter_noise(chunks)
        # an all-noise thread still has to produce something
        if kept:
            pool = kept
        stats["filtered_chunks"] = len(chunks) - len(pool)

    pool_texts = [chunks[i] for i in pool]
    anchor = build_anchor(title, pool_texts)
    title_text = normalize(title or "Untitled")

    vectors, method = await embed_with_fallback(
        pool_texts + summaries + [anchor, title_text], run_id=run_id
    )
    chunk_vecs = vectors[: len(pool_texts)]
    summary_vecs = vectors[len(pool_texts) : len(pool_texts) + len(summaries)]
    anchor_vec, title_vec = vectors[-2], vectors[-1]

    if policy.topic_anchor and pool_texts:
        sims = cosine_similarity(np.array(chunk_vecs, dtype=float), np.array([anchor_vec], dtype=float))[:, 0]
        kept_local, threshold = topic_anchor_filter(
            sims.tolist(),
            policy.anchor_thresholds,
            policy.selection_min,
            top_n=anchor_top_n,
            recent_n=anchor_recent_n,
            cap=policy.selection_k,
        )
        pool = [pool[i] for i in kept_local]
        chunk_vecs = [chunk_vecs[i] for i in kept_local]
        stats["anchor_kept"] = len(pool)
        stats["anchor_threshold"] = threshold

    texts = [chunks[i] for i in pool]
    candidates = [
        Candidate(text=t, vector=v, base_weight=base_weight(t), index=src)
        for t, v, src in zip(texts, chunk_vecs, pool)
    ]
    k = selection_k(policy, texts)
    picked = mmr_select(candidates, k, policy.mmr_lambda, query_vector=title_vec)
    picked.sort(key=lambda c: c.index)

    recall = pick_recall(summaries, summary_vecs, anchor_vec, recall_threshold, recall_max)

    stats.update({"selected_chunks": len(picked), "selection_k": k, "recall_used": len(recall)})
    logger.info(
        f"Selected {len(picked)}/{len(chunks)} chunks via {method}",
        extra={"run_id": run_id, **stats},
    )

    return SelectionResult(
        chunks=[c.text for c in picked],
        weights=[c.base_weight for c in picked],
        recall=recall,
        method=method,
        stats=stats,
    )
