"""Targeted LLM repair of invalid next_actions rows.

Rows first get the deterministic fixes (owner synonyms, field defaults).
Only the keys still failing after that are sent back to a model, which must
answer with a JSON patch holding just those keys. The patch is merged over
the row and the owner is mapped again. Calls are capped per run; anything
left invalid is fixed by enforce_next_actions_strict afterwards.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any

from app.core.completion import CompletionClient
from app.core.config import Settings, get_settings, parse_model_chain
from app.core.errors import CompletionError
from app.core.llm import parse_llm_json_dict
from app.core.logging import get_logger
from app.core.primer_schema import (
    coerce_next_action,
    prefill_next_action,
    sanitize_owner,
    validate_next_action,
)
from app.core.schemas_continuity import OWNERS
from app.core.text_utils import truncate_tokens

logger = get_logger(__name__)

# ruff: noqa: E501
SYSTEM_PROMPT = """STRICT JSON ONLY. Output an object containing ONLY these keys: {keys}.
Rules: action matches "<Capitalized verb> ... producing <artifact file>"; owner is one of {owners}; deps and rollback are non-empty; effort_h is a number of hours greater than 0 and below 100.
Avoid generic or meta strings."""


@dataclass
class RowRepairResult:
    rows: list[dict[str, Any]]
    calls: int = 0
    repaired: int = 0


def build_row_repair_messages(
    keys: list[str], title: str, row: dict[str, Any], context: str = ""
) -> list[dict[str, str]]:
    user = f"Title: {title}\nCurrent row (invalid keys: {', '.join(keys)}): {json.dumps(row, ensure_ascii=False)}"
    if context:
        user += f"\nContext:\n{truncate_tokens(context, 600)}"
    return [
        {"role": "system", "content": SYSTEM_PROMPT.format(keys=", ".join(keys), owners=", ".join(OWNERS))},
        {"role": "user", "content": user},
    ]


def merge_patch(row: dict[str, Any], patch: dict[str, Any], keys: list[str]) -> dict[str, Any]:
    """Overlay only the requested keys from patch onto row."""
    merged = dict(row)
    for key in keys:
        if key in patch and patch[key] is not None:
            merged[key] = patch[key]
    merged = coerce_next_action(merged)
    merged["owner"] = sanitize_owner(merged["owner"])
    return merged


async def repair_row(
    client: CompletionClient,
    row: dict[str, Any],
    keys: list[str],
    title: str,
    context: str = "",
    settings: Settings | None = None,
) -> dict[str, Any] | None:
    """One repair call; None when the call or its parsing fails."""
    settings = settings or get_settings()
    try:
        result = await asyncio.wait_for(
            client.complete(
                parse_model_chain(settings.REPAIR_MODELS),
                build_row_repair_messages(keys, title, row, context),
                max_tokens=320,
                timeout=settings.REPAIR_TIMEOUT_S,
            ),
            timeout=settings.REPAIR_TIMEOUT_S,
        )
        patch = parse_llm_json_dict(result.content)
    except (TimeoutError, CompletionError, json.JSONDecodeError, ValueError) as e:
        logger.warning(
            f"Row repair failed for keys {keys}: {e!r}",
            extra={"run_id": client.run.run_id},
        )
        return None
    return merge_patch(row, patch, keys)


async def repair_next_actions(
    client: CompletionClient,
    raw_rows: Any,
    title: str,
    context: str = "",
    settings: Settings | None = None,
) -> RowRepairResult:
    """
    Repair rows still invalid after the deterministic fixes, one call per
    row, up to MAX_REPAIR_CALLS calls.

    Rows that are valid, over the cap, or whose repair failed are returned
    with only the deterministic fixes applied.
    """
    settings = settings or get_settings()
    raw = raw_rows if isinstance(raw_rows, list) else []
    rows = [prefill_next_action(coerce_next_action(r)) for r in raw]

    result = RowRepairResult(rows=[])
    for row in rows:
        invalid = validate_next_action(row)
        if not invalid or result.calls >= settings.MAX_REPAIR_CALLS:
            result.rows.append(row)
            continue

        result.calls += 1
        patched = await repair_row(client, row, invalid, title, context, settings)
        if patched is None:
            result.rows.append(row)
            continue
        if not validate_next_action(patched):
            result.repaired += 1
        result.rows.append(patched)

    if result.calls:
        logger.info(
            f"Row repair: {result.repaired}/{result.calls} rows fixed",
            extra={"run_id": client.run.run_id},
        )
    return result
