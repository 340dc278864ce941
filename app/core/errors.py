"""Exception types raised across the continuity pipeline."""


class ContinuityError(Exception):
    """Base class for pipeline errors."""


class CompletionError(ContinuityError):
    """Raised when every model in a call site's fallback chain failed."""

    def __init__(self, message: str, attempts: list[str] | None = None):
        super().__init__(message)
        self.attempts = attempts or []


class EmbeddingError(ContinuityError):
    """Raised when the embedding provider fails or returns malformed vectors."""


class PrimerSynthesisError(ContinuityError):
    """Raised when the required primer stage cannot produce any output."""


class ResultTimeoutError(ContinuityError):
    """Raised when a blocking result fetch gives up before the job is final."""

    def __init__(self, job_id: str, waited_s: float):
        super().__init__(f"Timeout waiting for final result of job {job_id} after {waited_s:.1f}s")
        self.job_id = job_id
        self.waited_s = waited_s
