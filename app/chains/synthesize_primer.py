"""LLM chain that turns a dense recap into a raw primer bundle (untyped JSON).

The output of this chain is never trusted; enforce_primer_schema coerces it.
"""

import asyncio
import json
from typing import Any

from app.core.completion import CompletionClient
from app.core.config import Settings, get_settings, parse_model_chain
from app.core.errors import CompletionError, PrimerSynthesisError
from app.core.llm import parse_llm_json_dict
from app.core.logging import get_logger
from app.core.schemas_continuity import OWNERS

logger = get_logger(__name__)

# ruff: noqa: E501
SYSTEM_PROMPT = f"""Produce STRICT JSON ONLY for the PRIMER bundle.

Rules:
- Every next_actions.action starts with a capitalized verb and contains "producing" plus a specific file artifact (.csv, .md, .json).
- For research or analysis topics prefer artifacts like top10.csv, sources.md, insights.md.
- owner must be one of: {", ".join(OWNERS)}.
- deps and rollback are non-empty strings; effort_h is a number of hours between 0 and 100.
- Keep [C#] tags from the recap on facts, decisions and questions.
- Never write generic or meta phrases ("As an AI", "Changes Made", "Data format JSON", "Lorem ipsum") or "..." placeholders.
- Return ONLY the JSON object. No prose, no markdown."""

EXAMPLE_STRUCTURE = {
    "system_instructions": ["Act as engineering copilot", "Be concise and actionable"],
    "receiving_guide": ["Read context recap", "Execute next actions"],
    "user_profile": {
        "language": "English",
        "style": ["direct", "honest"],
        "wants": ["copy-paste outputs", "fast results"],
        "avoid": ["marketing fluff", "generic headings"],
        "detail_level": "medium",
        "format_prefs": ["bullets", "code blocks"],
        "target_models": ["gpt"],
    },
    "context_recap": "Brief summary of current context",
    "key_facts": ["Fact 1 [C1]", "Fact 2 [C2]"],
    "decisions": ["Decision 1 [C1]"],
    "constraints": ["Constraint 1 [C1]"],
    "active_work": ["Work item 1 [C1]"],
    "open_questions": ["Question 1 [C1]"],
    "next_actions": [
        {
            "action": "Compile top-10 extension acquisitions producing table.md",
            "owner": "Research",
            "deps": "Source verification",
            "effort_h": 3,
            "impact": "▲",
            "rollback": "Remove table",
            "evidence": "[C1]",
        }
    ],
    "first_task": {
        "bullets": ["Start with first action", "Validate requirements", "Execute implementation"],
        "acceptance": ["Table renders", "Sources cited", "No errors", "Meets requirements"],
    },
    "injection_templates": {"gpt": "", "claude": "", "gemini": ""},
}


def build_primer_messages(title: str, recap: str) -> list[dict[str, str]]:
    example = json.dumps(EXAMPLE_STRUCTURE, indent=2, ensure_ascii=False)
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"Title: {title}\nDense recap:\n{recap}\n\n"
                f"Return JSON with EXACTLY this structure:\n{example}\n\n"
                "IMPORTANT: Every action MUST start with a capital verb and contain "
                "'producing <artifact>'. Every owner MUST be from the allowed list."
            ),
        },
    ]


async def synthesize_primer(
    client: CompletionClient,
    title: str,
    recap: str,
    settings: Settings | None = None,
) -> tuple[dict[str, Any], str | None]:
    """
    Synthesize the raw primer bundle.

    Returns:
        (raw_bundle, model). A timeout or unparseable output gives ({}, model)
        and the enforcer fills every key.

    Raises:
        PrimerSynthesisError: If every primer model failed
    """
    settings = settings or get_settings()

    try:
        result = await asyncio.wait_for(
            client.complete(
                parse_model_chain(settings.PRIMER_MODELS),
                build_primer_messages(title, recap),
                max_tokens=settings.PRIMER_MAX_TOKENS,
                timeout=settings.PRIMER_TIMEOUT_S,
            ),
            timeout=settings.PRIMER_TIMEOUT_S,
        )
    except TimeoutError:
        logger.warning(
            "Primer synthesis timed out, enforcing an empty bundle",
            extra={"run_id": client.run.run_id},
        )
        return {}, None
    except CompletionError as e:
        logger.error(
            f"Primer synthesis exhausted its model chain: {e}",
            extra={"run_id": client.run.run_id},
        )
        raise PrimerSynthesisError(str(e)) from e

    try:
        raw = parse_llm_json_dict(result.content)
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning(
            f"Primer output was not a JSON object: {e}",
            extra={"run_id": client.run.run_id, "model": result.model},
        )
        return {}, result.model

    logger.info(
        f"Synthesized primer with {len(raw)} keys",
        extra={"run_id": client.run.run_id, "model": result.model},
    )
    return raw, result.model
