"""LLM chain that rewrites a whole assembled handoff that failed the quality gate."""

import asyncio

from app.core.completion import CompletionClient
from app.core.config import Settings, get_settings, parse_model_chain
from app.core.errors import CompletionError
from app.core.logging import get_logger
from app.core.text_utils import scrub_placeholders

logger = get_logger(__name__)

REASON_HINTS = {
    "primer_cov": "Some KEY POINTS sections are missing or empty; fill them from the document's own content.",
    "actions": "Every next action must start with a capitalized verb, contain 'producing <artifact file>', and name an owner, dependencies, effort and rollback.",
    "evidence": "Detailed context bullets must keep their [S#] evidence tags; do not drop any.",
    "generic": "Remove generic or meta phrases (e.g. 'As an AI', 'Changes Made', 'Lorem ipsum') and '...' placeholders.",
}

# ruff: noqa: E501
SYSTEM_PROMPT = """Repair this continuity handoff in the conversation's language.
Focus on the ACTUAL conversation content; never invent facts, numbers or sources that are not in the draft.
Keep the section order: title, KEY POINTS, DETAILED CONTEXT, CONTINUATION.
Fix these deficiencies:
{hints}
Return only the repaired document. Max {max_tokens} tokens."""


def build_repair_messages(title: str, draft: str, reasons: list[str], max_tokens: int) -> list[dict[str, str]]:
    hints = "\n".join(f"- {REASON_HINTS.get(r, r)}" for r in reasons) or "- Improve structure and evidence."
    return [
        {"role": "system", "content": SYSTEM_PROMPT.format(hints=hints, max_tokens=max_tokens)},
        {"role": "user", "content": f"Title: {title}\n\n--- CURRENT ---\n{draft}\n--- END ---"},
    ]


async def repair_document(
    client: CompletionClient,
    title: str,
    draft: str,
    reasons: list[str],
    settings: Settings | None = None,
) -> str | None:
    """One whole-document repair; None if it times out or every model fails."""
    settings = settings or get_settings()
    max_tokens = settings.BOUNDED_OUTPUT_TOKENS // 2
    try:
        result = await asyncio.wait_for(
            client.complete(
                parse_model_chain(settings.REPAIR_MODELS),
                build_repair_messages(title, draft, reasons, max_tokens),
                max_tokens=max_tokens,
                timeout=settings.DOCUMENT_REPAIR_TIMEOUT_S,
            ),
            timeout=settings.DOCUMENT_REPAIR_TIMEOUT_S,
        )
    except (TimeoutError, CompletionError) as e:
        logger.warning(
            f"Document repair failed: {e!r}",
            extra={"run_id": client.run.run_id, "reasons": ",".join(reasons)},
        )
        return None

    repaired = scrub_placeholders(result.content.strip())
    logger.info(
        "Document repaired",
        extra={"run_id": client.run.run_id, "model": result.model, "reasons": ",".join(reasons)},
    )
    return repaired or None
