"""Tests for the map-reduce fallback variant."""

import time

import pytest

from app.core.config import get_settings
from app.graphs.map_reduce_graph import (
    coalesce,
    map_concurrency,
    notes_digest,
    notes_from_json,
    run_map_reduce_graph,
    split_sections,
)
from tests.fakes.fake_llm import FakeCompletionClient, exhausted

TITLE = "Fix login bug"
CHUNKS = [
    "user: We decided to rotate the signing keys before Friday. More detail follows here.",
    "assistant: The refresh handler drops the session on every retry. We saw it in prod.",
    "user: Ship the fix behind a flag and watch the error rate for a day.",
]


@pytest.mark.parametrize("n,groups", [(10, 10), (60, 60), (61, 31), (101, 34), (141, 36)])
def test_coalesce_group_sizes(n, groups):
    chunks = [f"chunk {i}" for i in range(n)]
    merged = coalesce(chunks)

    assert len(merged) == groups
    assert "\n\n".join(merged) == "\n\n".join(chunks)


def test_map_concurrency_clamped_per_plan():
    settings = get_settings().model_copy(update={"MAP_CONCURRENCY": 50})
    assert map_concurrency(False, settings) == 15
    assert map_concurrency(True, settings) == 30

    settings = get_settings().model_copy(update={"MAP_CONCURRENCY": 0})
    assert map_concurrency(False, settings) == 1


def test_notes_from_json():
    notes = notes_from_json(
        {
            "facts": [{"text": "Keys rotate weekly", "quote": "rotate weekly"}, {"text": ""}],
            "next_actions": ["Patch the handler"],
            "unknown": ["ignored"],
            "risks": "not a list",
        }
    )
    assert notes == '- Facts: Keys rotate weekly ("rotate weekly")\n- Next actions: Patch the handler'


@pytest.mark.parametrize(
    "text,expected",
    [
        ("=== PRIMER ===\nP\n=== DEEP CONTEXT ===\nD", ("P", "D")),
        ("P only\n=== DEEP CONTEXT ===\nD", ("P only", "D")),
        ("=== PRIMER ===\nP", ("P", "")),
        ("no markers", ("", "no markers")),
    ],
)
def test_split_sections(text, expected):
    assert split_sections(text) == expected


def test_notes_digest_tags_each_segment():
    digest = notes_digest(["- a\n- b", "* c"])
    assert digest == "- a [S1]\n- b [S1]\n- c [S2]"


@pytest.mark.asyncio
async def test_free_plan_maps_reduces_without_refine():
    client = FakeCompletionClient()
    progress: list[dict] = []

    outcome = await run_map_reduce_graph(client, TITLE, CHUNKS, paid=False, on_progress=progress.append)

    assert client.routes == ["map_json"] * 3 + ["reduce"]
    assert outcome.text.startswith(f"# {TITLE}")
    assert "## DETAILED CONTEXT" in outcome.text
    assert "[S3]" in outcome.text
    assert outcome.model == "groq:llama-3.1-8b-instant"
    assert outcome.evidence_density > 0
    assert outcome.stats["maps_failed"] == 0

    map_pcts = [p["map_pct"] for p in progress if "map_pct" in p]
    assert map_pcts == sorted(map_pcts) and map_pcts[-1] == 100
    percents = [p["percent"] for p in progress if "percent" in p]
    assert percents == sorted(percents)
    assert max(p.get("processed_chunks", 0) for p in progress) == 3


@pytest.mark.asyncio
async def test_paid_plan_uses_paid_models_and_refines():
    client = FakeCompletionClient()

    outcome = await run_map_reduce_graph(client, TITLE, CHUNKS, paid=True)

    assert client.routes[-1] == "refine"
    map_models = client.requests[0][1]
    assert map_models[0] == "groq:llama-3.3-70b-versatile"
    assert outcome.model == "groq:llama-3.3-70b-versatile"
    assert outcome.stats["refined"] is True


@pytest.mark.asyncio
async def test_map_falls_back_to_bullets():
    client = FakeCompletionClient({"map_json": "no json here"})

    outcome = await run_map_reduce_graph(client, TITLE, CHUNKS)

    assert client.routes.count("map_bullets") == 3
    assert outcome.stats["maps_failed"] == 0


@pytest.mark.asyncio
async def test_failed_maps_contribute_nothing_and_reduce_uses_raw_chunks():
    client = FakeCompletionClient({"map_json": exhausted("map_json"), "map_bullets": exhausted("map_bullets")})

    outcome = await run_map_reduce_graph(client, TITLE, CHUNKS)

    assert outcome.stats["maps_failed"] == 3
    reduce_user = client.requests[-1][2][-1]["content"]
    assert "We decided to rotate the signing keys" in reduce_user
    assert outcome.text


@pytest.mark.asyncio
async def test_evidence_pass_adds_tags_when_reduce_has_none():
    client = FakeCompletionClient(
        {"reduce": "=== PRIMER ===\nRecap line\n=== DEEP CONTEXT ===\n- Fact one\n- Fact two"}
    )

    outcome = await run_map_reduce_graph(client, TITLE, CHUNKS)

    assert "evidence" in client.routes
    assert outcome.stats["evidence_added"] is True
    assert "- Fact one [S1]" in outcome.text


@pytest.mark.asyncio
async def test_reduce_exhausted_still_returns_text():
    client = FakeCompletionClient({"reduce": exhausted("reduce")})

    outcome = await run_map_reduce_graph(client, TITLE, CHUNKS, paid=True)

    assert outcome.stats["reduce_failed"] is True
    assert "evidence" not in client.routes
    assert "refine" not in client.routes
    assert outcome.model is None
    assert "[S2]" in outcome.text
    assert outcome.text.rstrip().endswith("Continue the conversation naturally from where it left off.")


@pytest.mark.asyncio
async def test_past_time_target_skips_evidence_and_refine():
    client = FakeCompletionClient(
        {"reduce": "=== PRIMER ===\nRecap line\n=== DEEP CONTEXT ===\n- Fact one\n- Fact two"}
    )
    client.run.started_at = time.monotonic() - 100

    outcome = await run_map_reduce_graph(client, TITLE, CHUNKS, paid=True)

    assert client.routes == ["map_json"] * 3 + ["reduce"]
    assert outcome.stats["evidence_added"] is False
    assert outcome.stats["refined"] is False
    assert "- Fact one" in outcome.text
