"""
Primer bundle coercion and enforcement.

Raw model JSON goes in, a PrimerBundle with every required key comes out:
- strings: generic/meta boilerplate becomes the sentinel
- string arrays: non-lists become [], generic items are dropped
- first_task: exactly 3 bullets and 4 acceptance criteria
- next_actions: rows are fixed deterministically (owner synonyms, action
  shape, defaults) and topped up with domain rows
- injection_templates: rebuilt from the bundle when the model left them
  empty, generic or malformed

Targeted LLM row repair (app.chains.repair_next_actions) runs before
enforcement; everything here is deterministic.
"""

import re
from typing import Any

from app.core.logging import get_logger
from app.core.schemas_continuity import (
    OWNERS,
    REQUIRED_PRIMER_KEYS,
    SENTINEL,
    FirstTask,
    InjectionTemplates,
    NextAction,
    PrimerBundle,
    UserProfile,
)
from app.core.text_utils import REF_TAG_RE, scrub_placeholders, strip_evidence

logger = get_logger(__name__)

GENERIC_PATTERNS: list[re.Pattern] = [
    re.compile(r"\bAs an AI\b", re.IGNORECASE),
    re.compile(r"\bChanges Made\b", re.IGNORECASE),
    re.compile(r"\bData format\b", re.IGNORECASE),
    re.compile(r"\blink placeholder\b", re.IGNORECASE),
    re.compile(r"\bLorem ipsum\b", re.IGNORECASE),
    re.compile(r"\bThis section intentionally left blank\b", re.IGNORECASE),
]

ACTION_PATTERN = re.compile(r"^[A-Z][a-zA-Z]*\b.*\bproducing\s+\S+")

FIRST_TASK_BULLETS = 3
FIRST_TASK_ACCEPTANCE = 4
DEFAULT_EFFORT_H = 4.0
DEFAULT_DEPS = "Previous tasks completed"
DEFAULT_ROLLBACK = "Revert to previous state"
INJECTION_MAX_CHARS = 9000

_OWNER_SYNONYMS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"eng|dev"), "Engineering"),
    (re.compile(r"design|ux|ui"), "Design"),
    (re.compile(r"research|analyst"), "Research"),
    (re.compile(r"prod|pm"), "Product"),
    (re.compile(r"ops|operation"), "Ops"),
    (re.compile(r"legal|compliance"), "Legal"),
    (re.compile(r"growth|mkt|marketing"), "Growth"),
    (re.compile(r"data|ds"), "Data"),
    (re.compile(r"founder|ceo"), "Founder"),
]

_DOMAIN_PATTERNS: list[tuple[str, re.Pattern]] = [
    (
        "research",
        re.compile(
            r"extension|uzantı|price|acquire|acquisition|satın|most expensive|top.*list|top\s*\d+"
            r"|research|analy[sz]|compar|pazar|market|review"
        ),
    ),
    ("dev", re.compile(r"bug|fix|debug|test|code|dev")),
    ("product", re.compile(r"plan|strategy|roadmap|product|feature")),
]


# =============================================================================
# Strings
# =============================================================================


def is_generic(value: Any) -> bool:
    """Empty, or matches a banned boilerplate phrase."""
    text = str(value or "").strip()
    if not text:
        return True
    return any(rx.search(text) for rx in GENERIC_PATTERNS)


def contains_generic(text: str) -> bool:
    return any(rx.search(text or "") for rx in GENERIC_PATTERNS)


def ensure_string(value: Any) -> str:
    """Scalar to clean string; generic or empty becomes the sentinel."""
    if isinstance(value, (dict, list, tuple)) or value is None:
        return SENTINEL
    text = scrub_placeholders(str(value).strip())
    return SENTINEL if is_generic(text) else text


def ensure_string_array(value: Any) -> list[str]:
    """Non-lists become []; generic and empty items are dropped."""
    if not isinstance(value, list):
        return []
    out = []
    for item in value:
        if isinstance(item, (dict, list)) or item is None:
            continue
        text = scrub_placeholders(str(item).strip())
        if not is_generic(text):
            out.append(text)
    return out


def pad_exact(items: list[str], n: int) -> list[str]:
    """Truncate or pad with the sentinel to exactly n items."""
    return (items + [SENTINEL] * n)[:n]


def pad_min(items: list[str], n: int = 1) -> list[str]:
    return items + [SENTINEL] * max(0, n - len(items))


# =============================================================================
# Next actions
# =============================================================================


def sanitize_owner(value: Any) -> str:
    """Map free-form owner text onto the owner enum (Product when unknown)."""
    text = str(value or "").strip()
    if text in OWNERS:
        return text
    lowered = text.lower()
    for pattern, owner in _OWNER_SYNONYMS:
        if pattern.search(lowered):
            return owner
    return "Product"


def detect_domain(title: str, text: str = "") -> str:
    """research, dev, product or general, judged from the title (then text)."""
    for source in (title or "", text or ""):
        lowered = source.lower()
        if not lowered.strip():
            continue
        for domain, pattern in _DOMAIN_PATTERNS:
            if pattern.search(lowered):
                return domain
    return "general"


def _parse_effort(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def coerce_next_action(raw: Any) -> dict[str, Any]:
    """
    Shape one raw row into plain typed fields without fixing anything.

    A missing or non-numeric effort becomes 0 so the row fails validation
    and gets a chance at repair.
    """
    row = raw if isinstance(raw, dict) else {}
    evidence = str(row.get("evidence") or "")
    return {
        "action": re.sub(r"\s+", " ", strip_evidence(str(row.get("action") or ""))).strip(),
        "owner": str(row.get("owner") or "").strip(),
        "deps": strip_evidence(str(row.get("deps") or "")),
        "effort_h": _parse_effort(row.get("effort_h")),
        "impact": "▼" if row.get("impact") == "▼" else "▲",
        "rollback": strip_evidence(str(row.get("rollback") or "")),
        "evidence": evidence.strip() if REF_TAG_RE.search(evidence) else "",
    }


def validate_next_action(row: dict[str, Any]) -> list[str]:
    """Keys failing the five structural checks (empty list = valid row)."""
    invalid = []
    if not ACTION_PATTERN.search(str(row.get("action") or "")):
        invalid.append("action")
    if str(row.get("owner") or "").strip() not in OWNERS:
        invalid.append("owner")
    if not str(row.get("deps") or "").strip():
        invalid.append("deps")
    if not str(row.get("rollback") or "").strip():
        invalid.append("rollback")
    effort = _parse_effort(row.get("effort_h"))
    if not 0 < effort < 100:
        invalid.append("effort_h")
    return invalid


def repair_action(line: str, title: str = "") -> str:
    """
    Reshape an action into "<Verb> ... producing <artifact>".

    Already-valid actions pass through. Otherwise a domain rule picks the
    verb and artifact from keywords in the action, keeping its first words
    as context.
    """
    text = re.sub(r"\s+", " ", str(line or "")).strip()
    text = re.sub(r"producing\s+producing", "producing", text)
    if ACTION_PATTERN.search(text):
        return text
    if text and ACTION_PATTERN.search(text[0].upper() + text[1:]):
        return text[0].upper() + text[1:]

    lowered = text.lower()
    words = [w for w in text.split(" ") if w.lower() != "producing"][:4]
    domain = detect_domain(title)

    if domain == "research":
        verb, artifact = "Compile", "table.md"
        if re.search(r"top|list", lowered):
            verb, artifact = "Compile", "top10.csv"
        elif re.search(r"source|link", lowered):
            verb, artifact = "Document", "sources.md"
        elif re.search(r"insight|analysis", lowered):
            verb, artifact = "Analyze", "insights.md"
        return f"{verb} {' '.join(words) or 'research findings'} producing {artifact}"

    if domain == "dev":
        verb, artifact = "Implement", "fix.patch"
        if "test" in lowered:
            verb, artifact = "Create", "tests.spec.md"
        elif re.search(r"repro", lowered):
            verb, artifact = "Document", "repro.md"
        return f"{verb} {' '.join(words) or 'bugfix'} producing {artifact}"

    if domain == "product":
        verb, artifact = "Create", "plan.md"
        if "risk" in lowered:
            verb, artifact = "Analyze", "risks.md"
        elif re.search(r"next|step", lowered):
            verb, artifact = "Document", "next_steps.md"
        return f"{verb} {' '.join(words) or 'product planning'} producing {artifact}"

    verb, obj = "Implement", "component"
    tokens = lowered.split(" ")
    for candidate in ("Implement", "Create", "Build", "Deploy", "Test", "Review", "Design", "Develop"):
        if candidate.lower() in tokens:
            verb = candidate
            break
    for candidate in ("system", "component", "feature", "test", "documentation", "API", "interface", "pipeline"):
        if any(candidate.lower() in t for t in tokens):
            obj = candidate
            break
    return f"{verb} {obj} producing artifact"


def prefill_next_action(row: dict[str, Any]) -> dict[str, Any]:
    """
    Apply the fixes that need no model: owner synonyms and field defaults.

    Only the action text is left as it was; it is the one field a repair
    call can improve on.
    """
    deps = row.get("deps") or ""
    rollback = row.get("rollback") or ""
    effort = _parse_effort(row.get("effort_h"))
    return {
        **row,
        "owner": sanitize_owner(row.get("owner")),
        "deps": DEFAULT_DEPS if is_generic(deps) or len(deps.strip()) < 3 else deps.strip(),
        "effort_h": effort if 0 < effort < 100 else DEFAULT_EFFORT_H,
        "impact": "▼" if row.get("impact") == "▼" else "▲",
        "rollback": DEFAULT_ROLLBACK
        if is_generic(rollback) or len(rollback.strip()) < 3
        else rollback.strip(),
        "evidence": row.get("evidence", ""),
    }


def _fix_row(row: dict[str, Any], title: str) -> dict[str, Any]:
    out = prefill_next_action(row)
    action = out.get("action", "")
    out["action"] = repair_action("" if contains_generic(action) else action, title)
    return out


def enforce_next_actions_strict(
    rows: list[Any], title: str = ""
) -> tuple[list[dict[str, Any]], float]:
    """
    Force every row into compliance.

    Returns:
        (rows, validity) where validity is the fraction of input rows that
        passed all five checks before any fix (0.0 for an empty list). Every
        returned row passes validate_next_action.
    """
    coerced = [coerce_next_action(r) for r in (rows if isinstance(rows, list) else [])]
    if not coerced:
        return [], 0.0

    valid = sum(1 for r in coerced if not validate_next_action(r))
    domain = detect_domain(title)

    fixed = []
    for row in coerced:
        out = _fix_row(row, title)
        if validate_next_action(out):
            out = dict(BACKSTOP_ROWS[domain][0])
        fixed.append(out)

    return fixed, valid / len(coerced)


def _row(action: str, owner: str, deps: str, effort: float, rollback: str) -> dict[str, Any]:
    return {
        "action": action,
        "owner": owner,
        "deps": deps,
        "effort_h": effort,
        "impact": "▲",
        "rollback": rollback,
        "evidence": "",
    }


BACKSTOP_ROWS: dict[str, list[dict[str, Any]]] = {
    "research": [
        _row("Compile top-10 findings producing top10.csv", "Research", "Source list gathered", 3, "Discard draft table"),
        _row("Validate sources producing sources.md", "Research", "Top-10 table drafted", 2, "Remove unverified sources"),
        _row("Write synthesis producing insights.md", "Research", "Sources validated", 3, "Revert to previous synthesis"),
        _row("Compare candidates producing comparison.md", "Research", "Top-10 table drafted", 2, "Drop comparison draft"),
        _row("Document open gaps producing gaps.md", "Research", "Synthesis written", 1, "Delete gaps list"),
        _row("Document current findings producing log.md", "Research", "Previous tasks completed", 1, "Revert log entry"),
    ],
    "dev": [
        _row("Document reproduction steps producing repro.md", "Engineering", "Failing case identified", 1, "Delete repro notes"),
        _row("Implement the fix producing fix.patch", "Engineering", "Reproduction confirmed", 4, "Revert the patch"),
        _row("Create regression tests producing tests.spec.md", "Engineering", "Fix implemented", 2, "Remove new tests"),
        _row("Review the change producing review.md", "Engineering", "Tests passing", 1, "Reopen the review"),
        _row("Deploy the fix producing release-notes.md", "Ops", "Review approved", 1, "Roll back the deploy"),
        _row("Document current findings producing log.md", "Engineering", "Previous tasks completed", 1, "Revert log entry"),
    ],
    "product": [
        _row("Create the plan producing plan.md", "Product", "Goals agreed", 3, "Restore previous plan"),
        _row("Analyze delivery risks producing risks.md", "Product", "Plan drafted", 2, "Drop risk register draft"),
        _row("Define success metrics producing metrics.md", "Data", "Plan drafted", 2, "Revert metric definitions"),
        _row("Review scope with stakeholders producing decisions.md", "Founder", "Risks analyzed", 1, "Reopen scope decisions"),
        _row("Document next steps producing next_steps.md", "Product", "Scope reviewed", 1, "Revert next steps"),
        _row("Document current findings producing log.md", "Product", "Previous tasks completed", 1, "Revert log entry"),
    ],
    "general": [
        _row("Summarize current state producing status.md", "Product", "Conversation reviewed", 1, "Revert status note"),
        _row("List open questions producing questions.md", "Product", "Status summarized", 1, "Delete question list"),
        _row("Confirm decisions producing decisions.md", "Founder", "Questions listed", 1, "Reopen decisions"),
        _row("Plan the next milestone producing plan.md", "Product", "Decisions confirmed", 2, "Restore previous plan"),
        _row("Review blockers producing blockers.md", "Ops", "Plan drafted", 1, "Drop blocker list"),
        _row("Document current findings producing log.md", "Product", "Previous tasks completed", 1, "Revert log entry"),
    ],
}


def apply_domain_backstop(
    rows: list[dict[str, Any]], title: str, text: str = "", minimum: int = 6
) -> list[dict[str, Any]]:
    """Append canned rows for the detected domain until ``minimum`` rows exist."""
    if len(rows) >= minimum:
        return rows
    domain = detect_domain(title, text)
    out = list(rows)
    seen = {r["action"] for r in out}
    for candidate in BACKSTOP_ROWS[domain]:
        if len(out) >= minimum:
            break
        if candidate["action"] not in seen:
            out.append(dict(candidate))
            seen.add(candidate["action"])
    return out


# =============================================================================
# Injection templates
# =============================================================================


def _clean_line(text: str) -> str:
    return scrub_placeholders(strip_evidence(text))


def _usable(items: list[str]) -> list[str]:
    return [i for i in items if "Insufficient evidence" not in i and len(i) > 5]


def build_injection(bundle: PrimerBundle) -> str:
    """Paste-ready recap for a new conversation: facts, decisions, questions, next steps."""
    facts = _usable(bundle.key_facts)[:5]
    decisions = _usable(bundle.decisions)[:5]
    questions = _usable(bundle.open_questions)[:3]
    actions = [a.action for a in bundle.next_actions][:4]

    def section(name: str, items: list[str], empty: str, limit: int | None = None) -> str:
        if not items:
            return f"- {name}:\n  • {empty}"
        lines = [_clean_line(i)[:limit] if limit else _clean_line(i) for i in items]
        return f"- {name}:\n" + "\n".join(f"  • {line}" for line in lines)

    def render(next_steps: list[str], limit: int | None = None) -> str:
        sections = [
            section("Facts", facts, "No strong evidence found; continue by collecting sources."),
            section("Decisions", decisions, "No strong evidence found; continue by collecting decision context."),
            section("Open Questions", questions, "No strong evidence found; continue by collecting question context."),
            section("Next Steps", next_steps, "Continue with current task focus.", limit),
        ]
        return (
            "CONTEXT RECAP (Continuity Handoff)\n"
            + "\n".join(sections)
            + "\n\nInstruction: Continue seamlessly as if the session never stopped. "
            "Be concise and actionable."
        )

    injection = render(actions)
    if len(injection) > INJECTION_MAX_CHARS:
        injection = render(actions[:2], limit=80)
    return injection[:INJECTION_MAX_CHARS]


def validate_injection(injection: str) -> tuple[bool, list[str]]:
    """Check headers, bullet count and banned content of an injection template."""
    issues = []
    if contains_generic(injection) or re.search(r"Insufficient evidence|\.\.\.|…", injection):
        issues.append("banned_phrases")
    for header, issue in (
        ("- Facts:", "missing_facts_header"),
        ("- Decisions:", "missing_decisions_header"),
        ("- Open Questions:", "missing_questions_header"),
        ("- Next Steps:", "missing_steps_header"),
    ):
        if header.lower() not in injection.lower():
            issues.append(issue)
    if injection.count("•") < 4:
        issues.append("insufficient_bullets")
    return not issues, issues


# =============================================================================
# Whole bundle
# =============================================================================


def compute_coverage(data: dict[str, Any]) -> float:
    """Share of required top-level keys present and non-null."""
    present = sum(1 for k in REQUIRED_PRIMER_KEYS if data.get(k) is not None)
    return present / len(REQUIRED_PRIMER_KEYS)


def enforce_primer_schema(
    raw: Any, title: str = "", min_actions: int = 6
) -> tuple[PrimerBundle, float]:
    """
    Coerce any raw model JSON (including {} or a non-dict) into a full bundle.

    Returns:
        (bundle, coverage); coverage is 1.0 by construction
    """
    data = raw if isinstance(raw, dict) else {}
    profile = data.get("user_profile") if isinstance(data.get("user_profile"), dict) else {}
    first = data.get("first_task") if isinstance(data.get("first_task"), dict) else {}
    templates = data.get("injection_templates") or data.get("templates")
    templates = templates if isinstance(templates, dict) else {}

    rows, validity = enforce_next_actions_strict(data.get("next_actions") or [], title)
    recap = ensure_string(data.get("context_recap"))
    rows = apply_domain_backstop(rows, title, recap if recap != SENTINEL else "", min_actions)

    detail = str(profile.get("detail_level") or "").strip()
    enforced: dict[str, Any] = {
        "system_instructions": ensure_string_array(data.get("system_instructions")),
        "receiving_guide": ensure_string_array(data.get("receiving_guide")),
        "user_profile": UserProfile(
            language=ensure_string(profile.get("language")),
            style=ensure_string_array(profile.get("style")),
            wants=ensure_string_array(profile.get("wants")),
            avoid=ensure_string_array(profile.get("avoid")),
            detail_level=detail if detail and not is_generic(detail) else "medium",
            format_prefs=ensure_string_array(profile.get("format_prefs")),
            target_models=ensure_string_array(profile.get("target_models")),
        ),
        "context_recap": recap,
        "key_facts": pad_min(ensure_string_array(data.get("key_facts"))),
        "decisions": pad_min(ensure_string_array(data.get("decisions"))),
        "constraints": ensure_string_array(data.get("constraints")),
        "active_work": ensure_string_array(data.get("active_work")),
        "open_questions": pad_min(ensure_string_array(data.get("open_questions"))),
        "next_actions": [NextAction(**r) for r in rows],
        "first_task": FirstTask(
            bullets=pad_exact(ensure_string_array(first.get("bullets")), FIRST_TASK_BULLETS),
            acceptance=pad_exact(ensure_string_array(first.get("acceptance")), FIRST_TASK_ACCEPTANCE),
        ),
        "injection_templates": InjectionTemplates(),
    }
    bundle = PrimerBundle(**enforced)

    built = build_injection(bundle)
    chosen = {}
    for target in ("gpt", "claude", "gemini"):
        candidate = str(templates.get(target) or "").strip()
        ok, _ = validate_injection(candidate) if candidate else (False, [])
        chosen[target] = candidate if ok else built
    bundle.injection_templates = InjectionTemplates(**chosen)

    coverage = compute_coverage(bundle.model_dump())
    logger.debug(
        f"Enforced primer: coverage={coverage:.2f} action_validity={validity:.2f}",
        extra={"rows": len(bundle.next_actions)},
    )
    return bundle, coverage
