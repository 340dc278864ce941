"""LLM chain for extractive, evidence-tagged bullets from conversation chunks.

Each selected chunk gets its own call; calls run through a fixed-size worker
pool with a per-call timeout. A timed-out, failed or malformed call yields no
bullets for that chunk instead of failing the batch. When the batch comes in
under the evidence quota, recall-pool summaries are extracted one by one
until the quota is met or the pool runs out.
"""

import asyncio
import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from app.core.async_pool import run_pooled
from app.core.completion import CompletionClient
from app.core.config import Settings, get_settings, parse_model_chain
from app.core.errors import CompletionError
from app.core.llm import parse_llm_json_dict
from app.core.logging import get_logger
from app.core.schemas_continuity import ExtractiveBullet

logger = get_logger(__name__)

# ruff: noqa: E501
SYSTEM_PROMPT = """Extract 1-2 bullets from THIS CHUNK ONLY.

Return STRICT JSON:
{{"bullets": [{{"text": "extracted fact or decision", "quote": "tiny verbatim quote", "id": "{chunk_id}"}}]}}

Rules:
1. text must be extractive, never invented.
2. quote must be copied literally from the chunk, at most {quote_max} characters.
3. id must be exactly {chunk_id}.
4. Prefer decisions, facts, constraints and asks.
5. If nothing is salient return {{"bullets": []}}.
6. Output ONLY the JSON object, no markdown, no explanation."""


@dataclass
class ExtractionResult:
    bullets: list[ExtractiveBullet] = field(default_factory=list)
    chunks_attempted: int = 0
    chunks_failed: int = 0
    recall_used: int = 0


def chunk_tag(number: int) -> str:
    return f"[C{number}]"


def build_extract_messages(chunk: str, number: int, quote_max: int = 60) -> list[dict[str, str]]:
    tag = chunk_tag(number)
    return [
        {"role": "system", "content": SYSTEM_PROMPT.format(chunk_id=tag, quote_max=quote_max)},
        {"role": "user", "content": f"Extract from chunk {tag}:\n{chunk}"},
    ]


def verify_quote(quote: str, chunk: str, quote_max: int = 60) -> tuple[str, bool]:
    """
    Anchor a model quote to the literal chunk text.

    Exact substrings pass through (capped to quote_max). A quote that only
    differs in case or whitespace is replaced by the matching span of the
    chunk. Anything else comes back empty and unverified.
    """
    quote = (quote or "").strip().strip('"').strip()
    if not quote:
        return "", False

    if quote in chunk:
        return quote[:quote_max].rstrip(), True

    words = quote.split()
    pattern = r"\s+".join(re.escape(w) for w in words)
    match = re.search(pattern, chunk, re.IGNORECASE)
    if match:
        return match.group(0)[:quote_max].rstrip(), True

    return "", False


def parse_bullets(
    raw_output: str,
    chunk: str,
    number: int,
    weight: float = 1.0,
    quote_max: int = 60,
) -> list[ExtractiveBullet]:
    """Parse the model's JSON into bullets tied to this chunk's tag."""
    parsed = parse_llm_json_dict(raw_output)
    items = parsed.get("bullets")
    if not isinstance(items, list):
        return []

    bullets = []
    for item in items[:2]:
        if not isinstance(item, dict):
            continue
        text = str(item.get("text") or "").strip()
        if not text:
            continue
        quote, verified = verify_quote(str(item.get("quote") or ""), chunk, quote_max)
        bullets.append(
            ExtractiveBullet(
                text=text,
                quote=quote,
                source_id=chunk_tag(number),
                verified=verified,
                weight=weight,
            )
        )
    return bullets


async def extract_bullets(
    client: CompletionClient,
    chunk: str,
    number: int,
    weight: float = 1.0,
    settings: Settings | None = None,
) -> list[ExtractiveBullet]:
    """
    Extract bullets from one chunk.

    Returns [] on timeout, exhausted model chain or unparseable output.
    """
    settings = settings or get_settings()
    messages = build_extract_messages(chunk, number, settings.QUOTE_MAX_CHARS)

    try:
        result = await asyncio.wait_for(
            client.complete(
                parse_model_chain(settings.EXTRACT_MODELS),
                messages,
                max_tokens=320,
                timeout=settings.EXTRACT_TIMEOUT_S,
            ),
            timeout=settings.EXTRACT_TIMEOUT_S,
        )
    except TimeoutError:
        logger.warning(
            f"Extraction timed out for {chunk_tag(number)}",
            extra={"run_id": client.run.run_id},
        )
        return []
    except CompletionError as e:
        logger.warning(
            f"Extraction failed for {chunk_tag(number)}: {e}",
            extra={"run_id": client.run.run_id},
        )
        return []

    try:
        return parse_bullets(result.content, chunk, number, weight, settings.QUOTE_MAX_CHARS)
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning(
            f"Malformed extraction output for {chunk_tag(number)}: {e}",
            extra={"run_id": client.run.run_id, "model": result.model},
        )
        return []


async def extract_all(
    client: CompletionClient,
    chunks: list[str],
    weights: list[float] | None = None,
    recall: list[str] | None = None,
    on_progress: Callable[[int, int], None] | None = None,
    settings: Settings | None = None,
) -> ExtractionResult:
    """
    Pooled extractive pass over selected chunks, then recall backfill.

    Chunks are tagged [C1]..[Cn] in order; recall summaries continue the
    numbering.
    """
    settings = settings or get_settings()
    weights = weights or [1.0] * len(chunks)
    total = len(chunks)

    async def _one(i: int, chunk: str) -> list[ExtractiveBullet]:
        return await extract_bullets(client, chunk, i + 1, weights[i], settings)

    def _done(finished: int) -> None:
        if on_progress is not None:
            on_progress(finished, total)

    per_chunk = await run_pooled(chunks, _one, settings.EXTRACT_CONCURRENCY, _done)

    result = ExtractionResult(chunks_attempted=total)
    for bullets in per_chunk:
        if not bullets:
            result.chunks_failed += 1
        result.bullets.extend(bullets)

    for offset, summary in enumerate(recall or []):
        if len(result.bullets) >= settings.EVIDENCE_QUOTA:
            break
        extra = await extract_bullets(client, summary, total + offset + 1, 1.0, settings)
        result.recall_used += 1
        result.bullets.extend(extra)

    logger.info(
        f"Extracted {len(result.bullets)} bullets from {total} chunks",
        extra={
            "run_id": client.run.run_id,
            "chunks_failed": result.chunks_failed,
            "recall_used": result.recall_used,
            "verified": sum(1 for b in result.bullets if b.verified),
        },
    )
    return result
