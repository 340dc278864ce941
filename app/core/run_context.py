"""Per-run shared state: rate-limit backoff and the wall-clock budget.

One RunContext is created per pipeline run and handed to every completion
call in that run. A 429 anywhere slows every later call in the same run;
concurrent runs never share backoff.
"""

import random
import time
import uuid
from dataclasses import dataclass, field

from app.core.config import get_settings


@dataclass
class RunContext:
    """Backoff counter, timer and identifiers for a single pipeline run."""

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str | None = None
    backoff_ms: float = 0.0
    started_at: float = field(default_factory=time.monotonic)
    start_ms: int = 1200
    multiplier: float = 1.6
    cap_ms: int = 8000
    jitter_ms: int = 200
    seed: int | None = None
    rate_limit_events: int = 0

    def __post_init__(self) -> None:
        self._rng = random.Random(self.seed)

    @classmethod
    def from_settings(cls, job_id: str | None = None, seed: int | None = None) -> "RunContext":
        settings = get_settings()
        return cls(
            job_id=job_id,
            start_ms=settings.BACKOFF_START_MS,
            multiplier=settings.BACKOFF_MULTIPLIER,
            cap_ms=settings.BACKOFF_CAP_MS,
            jitter_ms=settings.BACKOFF_JITTER_MS,
            seed=seed,
        )

    def bump(self) -> float:
        """Grow backoff after a rate-limit response; returns the new value in ms."""
        self.rate_limit_events += 1
        if self.backoff_ms <= 0:
            grown = float(self.start_ms)
        else:
            grown = max(1000.0, self.backoff_ms * self.multiplier)
        self.backoff_ms = min(float(self.cap_ms), grown)
        return self.backoff_ms

    def relax(self) -> float:
        """Halve backoff after a successful call."""
        self.backoff_ms = self.backoff_ms / 2 if self.backoff_ms >= 1 else 0.0
        return self.backoff_ms

    def jittered_delay_s(self) -> float:
        """Current backoff with +/- jitter, in seconds (0 when no backoff)."""
        if self.backoff_ms <= 0:
            return 0.0
        jitter = self._rng.uniform(-self.jitter_ms, self.jitter_ms)
        return max(0.0, self.backoff_ms + jitter) / 1000

    def elapsed_s(self) -> float:
        return time.monotonic() - self.started_at

    def past_checkpoint(self, checkpoint_s: float) -> bool:
        return self.elapsed_s() >= checkpoint_s
