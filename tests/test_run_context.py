"""Tests for the per-run backoff and wall-clock context."""

import time

import pytest

from app.core.run_context import RunContext


def test_bump_grows_and_caps():
    run = RunContext(start_ms=1200, multiplier=1.6, cap_ms=8000)

    values = [run.bump() for _ in range(6)]

    assert values[0] == 1200
    assert values[1] == pytest.approx(1920)
    assert values[2] == pytest.approx(3072)
    assert values[-1] == 8000
    assert run.rate_limit_events == 6


def test_relax_halves_to_zero():
    run = RunContext()
    run.bump()
    assert run.relax() == 600
    run.backoff_ms = 0.8
    assert run.relax() == 0.0


def test_bump_after_relax_keeps_one_second_floor():
    run = RunContext()
    run.backoff_ms = 300
    assert run.bump() == 1000


def test_jittered_delay_within_bounds():
    run = RunContext(jitter_ms=200, seed=42)
    assert run.jittered_delay_s() == 0.0

    run.bump()
    for _ in range(20):
        assert 1.0 <= run.jittered_delay_s() <= 1.4


def test_jitter_is_reproducible_with_seed():
    first, second = RunContext(seed=3), RunContext(seed=3)
    first.bump()
    second.bump()
    assert [first.jittered_delay_s() for _ in range(5)] == [second.jittered_delay_s() for _ in range(5)]


def test_runs_do_not_share_backoff():
    busy, idle = RunContext(), RunContext()
    busy.bump()
    assert idle.backoff_ms == 0.0


def test_past_checkpoint():
    run = RunContext()
    assert not run.past_checkpoint(45)
    run.started_at = time.monotonic() - 50
    assert run.past_checkpoint(45)


def test_from_settings_uses_configured_backoff():
    run = RunContext.from_settings(job_id="job-1", seed=1)
    assert run.job_id == "job-1"
    assert run.start_ms == 1200
    assert run.cap_ms == 8000
