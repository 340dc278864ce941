"""LLM chain that compresses extractive bullets into one dense recap.

Bounded shrink loop (at most 2 extra passes):
  1. first pass
  2. over the primary ceiling: a more aggressive second pass
  3. still over the absolute ceiling: drop the lowest-weighted bullets and
     recompress once more
The result is finally cut to the primary ceiling so the recap never exceeds it.
"""

import asyncio
from dataclasses import dataclass

from app.core.completion import CompletionClient
from app.core.config import Settings, get_settings, parse_model_chain
from app.core.errors import CompletionError
from app.core.logging import get_logger
from app.core.schemas_continuity import ExtractiveBullet
from app.core.text_utils import estimate_tokens, fit_to_tokens, scrub_placeholders

logger = get_logger(__name__)

# ruff: noqa: E501
FIRST_PASS_PROMPT = """Compress the extracted bullets into a dense recap in the conversation's language.

Sections: Key Facts, Decisions Made, Current Status, Open Questions, Next Actions.
Keep the [C#] tag of every bullet you use. No repetition, no generic examples, no "..." placeholders, no filler.
Focus only on what actually happened in the conversation. Max {max_tokens} tokens."""

SECOND_PASS_PROMPT = """SECOND COMPRESSION PASS. Aggressively trim to at most {ceiling} tokens.
Remove every "..." placeholder. Keep only essential facts, decisions, questions and next steps with their [C#] tags. Terse, no fluff."""

FALLBACK_BULLETS = 15


@dataclass
class CompressionResult:
    text: str
    tokens: int
    passes: int
    dropped_bullets: int = 0
    degraded: bool = False


def format_bullet(bullet: ExtractiveBullet) -> str:
    """One bullet line; only verified quotes carry the chunk tag."""
    quote = f' "{bullet.quote}"' if bullet.quote else ""
    tag = f" {bullet.source_id}" if bullet.verified else ""
    return f"- {bullet.text}{quote}{tag}"


def bullets_digest(bullets: list[ExtractiveBullet], limit: int | None = None) -> str:
    selected = bullets[:limit] if limit else bullets
    return "\n".join(format_bullet(b) for b in selected)


def build_compress_messages(
    bullets: list[ExtractiveBullet],
    title: str,
    is_second_pass: bool,
    settings: Settings,
) -> list[dict[str, str]]:
    if is_second_pass:
        system = SECOND_PASS_PROMPT.format(ceiling=settings.COMPRESS_CEILING_TOKENS)
    else:
        system = FIRST_PASS_PROMPT.format(max_tokens=settings.COMPRESS_FIRST_MAX_TOKENS - 200)
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": f"Title: {title}\nExtracted bullets:\n{bullets_digest(bullets)}"},
    ]


def drop_lowest_weighted(bullets: list[ExtractiveBullet], fraction: float) -> list[ExtractiveBullet]:
    """Keep the highest-weighted (1 - fraction) of bullets, in original order."""
    keep = max(1, round(len(bullets) * (1 - fraction)))
    ranked = sorted(range(len(bullets)), key=lambda i: (-bullets[i].weight, i))[:keep]
    return [bullets[i] for i in sorted(ranked)]


async def compress(
    client: CompletionClient,
    bullets: list[ExtractiveBullet],
    title: str,
    is_second_pass: bool = False,
    max_tokens: int | None = None,
    settings: Settings | None = None,
) -> str | None:
    """One compression call; None when it times out or every model fails."""
    settings = settings or get_settings()
    if max_tokens is None:
        max_tokens = (
            settings.COMPRESS_SECOND_MAX_TOKENS if is_second_pass else settings.COMPRESS_FIRST_MAX_TOKENS
        )

    try:
        result = await asyncio.wait_for(
            client.complete(
                parse_model_chain(settings.COMPRESS_MODELS),
                build_compress_messages(bullets, title, is_second_pass, settings),
                max_tokens=max_tokens,
                timeout=settings.COMPRESS_TIMEOUT_S,
            ),
            timeout=settings.COMPRESS_TIMEOUT_S,
        )
    except (TimeoutError, CompletionError) as e:
        logger.warning(
            f"Compression pass failed (second_pass={is_second_pass}): {e!r}",
            extra={"run_id": client.run.run_id},
        )
        return None
    return result.content.strip()


async def compress_recap(
    client: CompletionClient,
    bullets: list[ExtractiveBullet],
    title: str,
    settings: Settings | None = None,
) -> CompressionResult:
    """
    Compress bullets into a recap within the primary token ceiling.

    A failed first pass degrades to a digest of the first bullets; failed
    later passes keep the previous text.
    """
    settings = settings or get_settings()
    ceiling = settings.COMPRESS_CEILING_TOKENS

    text = await compress(client, bullets, title, settings=settings)
    passes = 1
    degraded = text is None
    if text is None:
        text = bullets_digest(bullets, FALLBACK_BULLETS)

    dropped = 0
    if estimate_tokens(text) > ceiling:
        second = await compress(client, bullets, title, is_second_pass=True, settings=settings)
        passes += 1
        text = second or text

        if estimate_tokens(text) > settings.COMPRESS_ABSOLUTE_TOKENS:
            trimmed = drop_lowest_weighted(bullets, settings.COMPRESS_DROP_FRACTION)
            dropped = len(bullets) - len(trimmed)
            third = await compress(
                client,
                trimmed,
                title,
                is_second_pass=True,
                max_tokens=settings.COMPRESS_DROP_MAX_TOKENS,
                settings=settings,
            )
            passes += 1
            text = third or text

    text = fit_to_tokens(scrub_placeholders(text), ceiling)
    tokens = estimate_tokens(text)

    logger.info(
        f"Compressed {len(bullets)} bullets into {tokens} tokens in {passes} pass(es)",
        extra={"run_id": client.run.run_id, "dropped": dropped, "degraded": degraded},
    )
    return CompressionResult(text=text, tokens=tokens, passes=passes, dropped_bullets=dropped, degraded=degraded)
