"""
Final handoff document assembly.

Section order is fixed:
    # <title>
    ## KEY POINTS        (rendered from the enforced bundle, never trimmed)
    ## DETAILED CONTEXT  (deep context, trimmed first when over the cap)
    ## CONTINUATION

Reference tags are stripped from primer prose here; they survive only in the
next-actions evidence column and in deep-context bullets.
"""

from dataclasses import dataclass

from app.core.logging import get_logger
from app.core.primer_schema import contains_generic
from app.core.schemas_continuity import SENTINEL, PrimerBundle
from app.core.text_utils import REF_TAG_RE, estimate_tokens, fit_to_tokens, scrub_placeholders, strip_evidence

logger = get_logger(__name__)

CONTINUATION_CUE = "Continue the conversation naturally from where it left off."
TABLE_HEADER = (
    "| action | owner | deps | effort(h) | impact | rollback | evidence |\n"
    "| --- | --- | --- | --- | --- | --- | --- |"
)
MAX_TABLE_ROWS = 12


@dataclass
class AssembledHandoff:
    text: str
    tokens_estimate: int
    trimmed: bool = False


def _prose(text: str) -> str:
    return scrub_placeholders(strip_evidence(text))


def _bullets(items: list[str]) -> str:
    lines = [_prose(i) for i in items if i and i != SENTINEL]
    return "\n".join(f"- {line}" for line in lines if line)


def _cell(value: object) -> str:
    return str(value).replace("|", "/").replace("\n", " ").strip()


def render_actions_table(bundle: PrimerBundle) -> str:
    rows = []
    for a in bundle.next_actions[:MAX_TABLE_ROWS]:
        evidence = " ".join(REF_TAG_RE.findall(a.evidence))
        effort = int(a.effort_h) if float(a.effort_h).is_integer() else a.effort_h
        rows.append(
            f"| {_cell(a.action)} | {a.owner} | {_cell(a.deps)} | {effort} | {a.impact} "
            f"| {_cell(a.rollback)} | {evidence} |"
        )
    if not rows:
        return ""
    return TABLE_HEADER + "\n" + "\n".join(rows)


def render_primer(bundle: PrimerBundle) -> str:
    """KEY POINTS body: recap, facts, decisions, constraints, work, questions, actions, first task."""
    parts = []
    if bundle.context_recap != SENTINEL:
        parts.append(f"**Summary:**\n{_prose(bundle.context_recap)}")

    for label, items in (
        ("Key Facts", bundle.key_facts),
        ("Decisions", bundle.decisions),
        ("Constraints", bundle.constraints),
        ("Active Work", bundle.active_work),
        ("Open Questions", bundle.open_questions),
    ):
        body = _bullets(items)
        if body:
            parts.append(f"**{label}:**\n{body}")

    table = render_actions_table(bundle)
    if table:
        parts.append(f"**Next Actions:**\n{table}")

    first = _bullets(bundle.first_task.bullets)
    if first:
        acceptance = _bullets(bundle.first_task.acceptance)
        block = f"**First Task:**\n{first}"
        if acceptance:
            block += f"\n\nAcceptance:\n{acceptance}"
        parts.append(block)

    return "\n\n".join(parts)


def clean_deep_context(deep: str) -> str:
    """Drop deep-context lines that carry banned boilerplate."""
    kept = [line for line in (deep or "").splitlines() if not contains_generic(line)]
    return scrub_placeholders("\n".join(kept)).strip()


def compose_document(title: str, primer: str, deep: str) -> str:
    return (
        f"# {title}\n\n"
        f"## KEY POINTS\n{primer or 'No key points available'}\n\n"
        f"## DETAILED CONTEXT\n{deep or 'No detailed context available'}\n\n"
        f"## CONTINUATION\n{CONTINUATION_CUE}"
    )


def assemble(
    title: str,
    bundle: PrimerBundle,
    deep_context: str | None = None,
    max_tokens: int | None = None,
) -> AssembledHandoff:
    """
    Render the final document.

    Args:
        title: Conversation title (a generic title becomes "Untitled")
        bundle: Enforced primer bundle
        deep_context: Optional detailed context
        max_tokens: Size cap; when exceeded only the deep context is cut

    Returns:
        AssembledHandoff with the text, its token estimate and a trimmed flag
    """
    title = _prose(title or "").strip() or "Untitled"
    if contains_generic(title):
        title = "Untitled"

    primer = render_primer(bundle)
    deep = clean_deep_context(deep_context or "")
    text = compose_document(title, primer, deep)
    tokens = estimate_tokens(text)

    trimmed = False
    if max_tokens and tokens > max_tokens and deep:
        fixed = estimate_tokens(compose_document(title, primer, ""))
        budget = max(0, max_tokens - fixed)
        deep = fit_to_tokens(deep, budget) if budget else ""
        text = compose_document(title, primer, deep)
        tokens = estimate_tokens(text)
        trimmed = True
        logger.info(f"Trimmed deep context to fit {max_tokens} tokens")

    return AssembledHandoff(text=text, tokens_estimate=tokens, trimmed=trimmed)
