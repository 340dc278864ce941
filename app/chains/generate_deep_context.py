"""LLM chain for the detailed-context section of a handoff.

Two part calls run concurrently over the same numbered segments; each
factual bullet must cite its segment as [S#]. When neither part returns
text (or the run is past its wall-clock checkpoint) a deterministic digest
of the verified extractive bullets is used instead.
"""

import asyncio
import re
from dataclasses import dataclass

from app.core.completion import CompletionClient
from app.core.config import Settings, get_settings, parse_model_chain
from app.core.errors import CompletionError
from app.core.logging import get_logger
from app.core.schemas_continuity import ExtractiveBullet
from app.core.text_utils import scrub_placeholders, truncate_tokens

logger = get_logger(__name__)

# ruff: noqa: E501
SYSTEM_PROMPT = """DEEP CONTEXT PART ONLY (no headers, no preamble).
Every factual bullet ends with the [S#] tag of the segment it comes from and, where useful, a short verbatim quote (at most 120 chars).
FORBIDDEN: generic definitions, meta commentary, "..." placeholders.
Never invent numbers; if evidence is missing write "Insufficient evidence [S#]"."""

PART_SECTIONS = (
    "Facts & Data; Decisions & Rationale; Constraints & Guardrails",
    "Full Next Actions table; Open Questions & Assumptions; Artifacts / Snippets; Tests; Glossary & Canonical Terms",
)

SEGMENT_MAX_TOKENS = 400

_MARKER_RE = re.compile(r"^\s*={3}\s*(?:PRIMER|DEEP CONTEXT)\s*={3}\s*$", re.IGNORECASE | re.MULTILINE)
_CHUNK_TAG_RE = re.compile(r"\[C(\d+)\]")


@dataclass
class DeepContextResult:
    text: str
    method: str  # llm | partial | digest
    model: str | None = None


def source_tag(number: int) -> str:
    return f"[S{number}]"


def format_segments(segments: list[str]) -> str:
    return "\n\n".join(
        f"{source_tag(i + 1)} {truncate_tokens(s, SEGMENT_MAX_TOKENS)}" for i, s in enumerate(segments)
    )


def build_part_messages(title: str, recap: str, segments: list[str], sections: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"Title: {title}\nSections to produce (in order): {sections}.\n\n"
                f"Dense recap:\n{recap}\n\nSegments:\n{format_segments(segments)}"
            ),
        },
    ]


def clean_part(text: str) -> str:
    """Drop section markers the model sometimes echoes, and ellipses."""
    return scrub_placeholders(_MARKER_RE.sub("", text)).strip()


def evidence_digest(bullets: list[ExtractiveBullet], segment_count: int) -> str:
    """
    Deterministic deep context from verified bullets.

    Chunk tags map one-to-one onto segment tags ([C3] -> [S3]) because the
    segments are the selected chunks in the same order. Recall bullets are
    numbered past the last segment and keep their [C#] tag.
    """
    lines = []
    for bullet in bullets:
        if not bullet.verified:
            continue
        source = bullet.source_id
        match = _CHUNK_TAG_RE.fullmatch(source)
        if match and int(match.group(1)) <= segment_count:
            source = source_tag(int(match.group(1)))
        quote = f' ("{bullet.quote}")' if bullet.quote else ""
        lines.append(f"- {bullet.text}{quote} {source}")
    return "\n".join(lines)


async def _generate_part(
    client: CompletionClient,
    title: str,
    recap: str,
    segments: list[str],
    sections: str,
    settings: Settings,
) -> tuple[str, str] | None:
    try:
        result = await asyncio.wait_for(
            client.complete(
                parse_model_chain(settings.DEEP_CONTEXT_MODELS),
                build_part_messages(title, recap, segments, sections),
                max_tokens=settings.DEEP_CONTEXT_MAX_TOKENS,
                timeout=settings.DEEP_CONTEXT_TIMEOUT_S,
            ),
            timeout=settings.DEEP_CONTEXT_TIMEOUT_S,
        )
    except (TimeoutError, CompletionError) as e:
        logger.warning(
            f"Deep context part failed ({sections.split(';')[0]}): {e!r}",
            extra={"run_id": client.run.run_id},
        )
        return None
    text = clean_part(result.content)
    return (text, result.model) if text else None


async def generate_deep_context(
    client: CompletionClient,
    title: str,
    recap: str,
    segments: list[str],
    bullets: list[ExtractiveBullet],
    skip_llm: bool = False,
    settings: Settings | None = None,
) -> DeepContextResult:
    """
    Build the deep context from both parts, or the evidence digest.

    Args:
        client: Completion client for this run
        title: Conversation title
        recap: Dense recap (or raw bullet digest when compression was skipped)
        segments: Selected chunks, cited as [S1]..[Sn] in order
        bullets: Extractive bullets for the digest fallback
        skip_llm: Go straight to the digest (wall-clock checkpoint passed)
    """
    settings = settings or get_settings()
    if skip_llm or not segments:
        return DeepContextResult(text=evidence_digest(bullets, len(segments)), method="digest")

    parts = await asyncio.gather(
        *(_generate_part(client, title, recap, segments, s, settings) for s in PART_SECTIONS)
    )
    ok = [p for p in parts if p is not None]

    if not ok:
        logger.warning(
            "Deep context unavailable, using evidence digest",
            extra={"run_id": client.run.run_id},
        )
        return DeepContextResult(text=evidence_digest(bullets, len(segments)), method="digest")

    method = "llm" if len(ok) == len(PART_SECTIONS) else "partial"
    return DeepContextResult(
        text="\n\n".join(text for text, _ in ok),
        method=method,
        model=ok[0][1],
    )
