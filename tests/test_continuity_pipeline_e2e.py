"""End-to-end tests of the selective continuity graph with a scripted client."""

import json
import time

import pytest

from app.core.errors import PrimerSynthesisError
from app.core.pipeline_policy import resolve_policy
from app.core.quality import evidence_density, generic_score
from app.core.schemas_continuity import SENTINEL
from app.graphs.continuity_graph import run_continuity_graph
from tests.fakes.fake_llm import GOOD_PRIMER, FakeCompletionClient, exhausted

TITLE = "Fix login bug"

CHUNKS = [
    "user: We decided to rotate the signing keys before Friday. The refresh handler drops the session.",
    "assistant: Agreed, we chose to patch the refresh handler first. Tests come after the patch.",
    "user: We decided to ship the fix behind a flag. Mobile clients may cache old tokens.",
]


def _primer_from_recap(messages):
    """Primer whose decisions come from the recap the model was given."""
    user = messages[-1]["content"]
    recap = user.split("Dense recap:\n", 1)[1].split("\n\nReturn JSON", 1)[0]
    decisions = [
        line.lstrip("- ").strip()
        for line in recap.splitlines()
        if "decided" in line.lower() or "chose" in line.lower()
    ]
    return json.dumps({**GOOD_PRIMER, "decisions": decisions})


def _with(**changes):
    return json.dumps({**GOOD_PRIMER, **changes})


@pytest.mark.asyncio
async def test_scenario_a_decisions_with_evidence():
    client = FakeCompletionClient({"primer": _primer_from_recap})
    progress: list[dict] = []

    outcome = await run_continuity_graph(
        client, TITLE, CHUNKS, resolve_policy("selective"), on_progress=progress.append
    )

    decisions = [d for d in outcome.bundle.decisions if d != SENTINEL]
    assert len(decisions) >= 1
    assert any("rotate the signing keys" in d for d in decisions)
    assert outcome.score.evidence_density > 0
    assert evidence_density(outcome.text) > 0
    assert outcome.passed
    assert outcome.reasons == []
    assert outcome.model == "groq:llama-3.3-70b-versatile"

    percents = [p["percent"] for p in progress if "percent" in p]
    assert percents == sorted(percents)
    assert progress[0]["stage"] == "mapping"
    assert progress[-1]["stage"] == "reduce"

    assert client.routes.count("extract") == 3
    assert client.routes.count("deep") == 2
    assert "doc_repair" not in client.routes


@pytest.mark.asyncio
async def test_scenario_c_generic_recap_never_reaches_output():
    client = FakeCompletionClient(
        {"primer": _with(context_recap="As an AI, I cannot recall the conversation.")}
    )

    outcome = await run_continuity_graph(client, TITLE, CHUNKS, resolve_policy("selective"))

    assert outcome.bundle.context_recap == SENTINEL
    assert "As an AI" not in outcome.text
    assert generic_score(outcome.text) == 1.0
    assert outcome.score.generic_score == 1.0


@pytest.mark.asyncio
async def test_scenario_d_owner_synonym_is_mapped():
    rows = [dict(r) for r in GOOD_PRIMER["next_actions"]]
    rows[0]["owner"] = "dev"
    client = FakeCompletionClient({"primer": _with(next_actions=rows)})

    outcome = await run_continuity_graph(client, TITLE, CHUNKS, resolve_policy("selective"))

    assert outcome.bundle.next_actions[0].owner == "Engineering"
    # the synonym is mapped deterministically, no repair call needed
    assert client.routes.count("row_repair") == 0


@pytest.mark.asyncio
async def test_row_repair_cannot_override_owner_synonym():
    rows = [dict(r) for r in GOOD_PRIMER["next_actions"]]
    rows[0]["owner"] = "dev"
    rows[0]["action"] = "fix the refresh handler"
    patch = json.dumps({"action": "Implement refresh handler fix producing fix.patch", "owner": "Product"})
    client = FakeCompletionClient({"primer": _with(next_actions=rows), "row_repair": patch})

    outcome = await run_continuity_graph(client, TITLE, CHUNKS, resolve_policy("selective"))

    assert client.routes.count("row_repair") == 1
    assert outcome.bundle.next_actions[0].owner == "Engineering"
    assert outcome.bundle.next_actions[0].action == "Implement refresh handler fix producing fix.patch"


@pytest.mark.asyncio
async def test_unparseable_primer_is_enforced_from_empty():
    client = FakeCompletionClient({"primer": "I could not produce JSON today"})

    outcome = await run_continuity_graph(client, TITLE, CHUNKS, resolve_policy("selective"))

    assert outcome.bundle.context_recap == SENTINEL
    assert len(outcome.bundle.next_actions) == 6
    assert "## KEY POINTS" in outcome.text


@pytest.mark.asyncio
async def test_primer_chain_exhausted_raises():
    client = FakeCompletionClient({"primer": exhausted("primer")})

    with pytest.raises(PrimerSynthesisError):
        await run_continuity_graph(client, TITLE, CHUNKS, resolve_policy("selective"))


@pytest.mark.asyncio
async def test_past_checkpoint_takes_fast_path():
    client = FakeCompletionClient()
    client.run.started_at = time.monotonic() - 100

    outcome = await run_continuity_graph(client, TITLE, CHUNKS, resolve_policy("selective"))

    assert "compress" not in client.routes
    assert "deep" not in client.routes
    assert outcome.stats["compress_skipped"] is True
    assert outcome.stats["deep_method"] == "digest"
    # digest carries [S#] tags mapped from verified bullets
    assert "[S1]" in outcome.text


@pytest.mark.asyncio
async def test_failed_deep_context_uses_digest():
    client = FakeCompletionClient({"deep": exhausted("deep")})

    outcome = await run_continuity_graph(client, TITLE, CHUNKS, resolve_policy("selective"))

    assert outcome.stats["deep_method"] == "digest"
    assert "[S3]" in outcome.text


@pytest.mark.asyncio
async def test_gate_failure_triggers_one_document_repair():
    untagged_rows = [{**r, "evidence": ""} for r in GOOD_PRIMER["next_actions"]]
    tagged = "\n".join(f"- Refresh handler detail {i} [S{i % 3 + 1}]" for i in range(12))

    def repair(messages):
        draft = messages[-1]["content"].split("--- CURRENT ---\n", 1)[1].split("\n--- END ---", 1)[0]
        return draft.replace("## CONTINUATION", f"{tagged}\n\n## CONTINUATION")

    client = FakeCompletionClient(
        {
            "primer": _with(next_actions=untagged_rows),
            "deep": "- The handler drops sessions\n- Keys rotate weekly",
            "doc_repair": repair,
        }
    )

    outcome = await run_continuity_graph(client, TITLE, CHUNKS, resolve_policy("selective"))

    assert client.routes.count("doc_repair") == 1
    assert outcome.stats["document_repaired"] is True
    assert outcome.passed
    assert "Refresh handler detail 0 [S1]" in outcome.text


@pytest.mark.asyncio
async def test_gate_failure_without_repair_reports_reasons():
    untagged_rows = [{**r, "evidence": ""} for r in GOOD_PRIMER["next_actions"]]
    client = FakeCompletionClient(
        {
            "primer": _with(next_actions=untagged_rows),
            "deep": "- The handler drops sessions\n- Keys rotate weekly",
            "doc_repair": exhausted("doc_repair"),
        }
    )

    outcome = await run_continuity_graph(client, TITLE, CHUNKS, resolve_policy("selective"))

    assert not outcome.passed
    assert "evidence" in outcome.reasons
    assert outcome.score.composite < 0.9


@pytest.mark.asyncio
async def test_worse_document_repair_keeps_original_score_and_reasons():
    untagged_rows = [{**r, "evidence": ""} for r in GOOD_PRIMER["next_actions"]]
    client = FakeCompletionClient(
        {
            "primer": _with(next_actions=untagged_rows),
            "deep": "- The handler drops sessions\n- Keys rotate weekly",
            "doc_repair": "As an AI I cannot continue this conversation.",
        }
    )

    outcome = await run_continuity_graph(client, TITLE, CHUNKS, resolve_policy("selective"))

    assert client.routes.count("doc_repair") == 1
    assert outcome.stats["document_repaired"] is True
    assert not outcome.passed
    assert "evidence" in outcome.reasons
    assert "generic" not in outcome.reasons
    assert outcome.score.generic_score == 1.0
    assert "As an AI" not in outcome.text
    assert outcome.text.startswith(f"# {TITLE}")


@pytest.mark.asyncio
async def test_bounded_policy_caps_output():
    long_deep = "\n".join(f"- Long detail {i} about the refresh handler and tokens [S1]" for i in range(600))
    client = FakeCompletionClient({"deep": long_deep})

    outcome = await run_continuity_graph(client, TITLE, CHUNKS, resolve_policy("bounded"))

    assert outcome.trimmed
    assert outcome.tokens_estimate <= 4000


@pytest.mark.asyncio
async def test_policy_without_compression_skips_it():
    client = FakeCompletionClient()
    policy = resolve_policy("selective").model_copy(update={"compress": False})

    outcome = await run_continuity_graph(client, TITLE, CHUNKS, policy)

    assert "compress" not in client.routes
    assert outcome.stats["compress_skipped"] is True
