"""Continuity quality scoring and the repair/fallback gate.

composite = 0.35 * primer_coverage
          + 0.30 * action_validity
          + 0.25 * evidence_density
          + 0.10 * generic_score

The gate passes iff composite >= threshold (0.9 by default). Reasons are
diagnostic only and feed the whole-document repair prompt.
"""

from typing import Any

from app.core.config import get_settings
from app.core.primer_schema import contains_generic, validate_next_action
from app.core.schemas_continuity import GateDecision, NextAction, PrimerBundle, QualityScore
from app.core.text_utils import REF_TAG_RE, SOURCE_TAG_RE, count_words

WEIGHTS = {
    "primer_coverage": 0.35,
    "action_validity": 0.30,
    "evidence_density": 0.25,
    "generic_score": 0.10,
}

EVIDENCE_REASON_FLOOR = 0.8


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def action_validity(rows: list[NextAction | dict[str, Any]]) -> float:
    """Fraction of rows passing all five structural checks (0.0 when empty)."""
    if not rows:
        return 0.0
    dumped = [r.model_dump() if isinstance(r, NextAction) else r for r in rows]
    valid = sum(1 for r in dumped if not validate_next_action(r))
    return _clamp(valid / len(dumped))


def evidence_density(text: str) -> float:
    """
    Reference tags per 1000 words, normalized by a target density.

    Text citing [S#] sources is held to the sourced target (10/1000 words by
    default); text with only extractive [C#] tags to the extractive target (5).
    """
    settings = get_settings()
    tags = len(REF_TAG_RE.findall(text or ""))
    if not tags:
        return 0.0
    words = max(1, count_words(text))
    target = (
        settings.EVIDENCE_TARGET_SOURCED
        if SOURCE_TAG_RE.search(text)
        else settings.EVIDENCE_TARGET_EXTRACTIVE
    )
    per_thousand = tags / (words / 1000)
    return _clamp(per_thousand / target)


def generic_score(text: str) -> float:
    """1.0 when no banned phrase appears anywhere in the text, else 0.0."""
    return 0.0 if contains_generic(text) else 1.0


def composite_score(coverage: float, validity: float, density: float, generic: float) -> float:
    return _clamp(
        WEIGHTS["primer_coverage"] * coverage
        + WEIGHTS["action_validity"] * validity
        + WEIGHTS["evidence_density"] * density
        + WEIGHTS["generic_score"] * generic
    )


def score_handoff(bundle: PrimerBundle, text: str, coverage: float) -> QualityScore:
    """Score an enforced bundle together with its assembled document."""
    validity = action_validity(bundle.next_actions)
    density = evidence_density(text)
    generic = generic_score(text)
    return QualityScore(
        primer_coverage=_clamp(coverage),
        action_validity=validity,
        evidence_density=density,
        generic_score=generic,
        composite=composite_score(coverage, validity, density, generic),
    )


def gate(score: QualityScore, threshold: float | None = None) -> GateDecision:
    if threshold is None:
        threshold = get_settings().GATE_THRESHOLD

    reasons = []
    if score.primer_coverage < 1.0:
        reasons.append("primer_cov")
    if score.action_validity < 1.0:
        reasons.append("actions")
    if score.evidence_density < EVIDENCE_REASON_FLOOR:
        reasons.append("evidence")
    if score.generic_score < 1.0:
        reasons.append("generic")

    return GateDecision(passed=score.composite >= threshold, reasons=reasons)
