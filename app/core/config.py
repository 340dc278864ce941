"""Configuration management for the Continuity Engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


def parse_model_chain(raw: str) -> list[str]:
    """Split a comma-separated ``provider:model`` list, dropping blanks."""
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Provider credentials (empty = provider unavailable)
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    GROQ_API_KEY: str = Field(default="", description="Groq API key")
    GROQ_API_KEY_PRO: str = Field(default="", description="Groq API key for paid plans")
    GROQ_API_KEY_FREE: str = Field(default="", description="Groq API key for free plans")
    GROQ_BASE_URL: str = Field(
        default="https://api.groq.com/openai/v1", description="Groq OpenAI-compatible endpoint"
    )
    ANTHROPIC_API_KEY: str = Field(default="", description="Anthropic API key")

    # Environment
    CONTINUITY_ENV: str = Field(default="dev", description="Environment: dev, test, prod")
    TOKEN_ESTIMATOR: str = Field(
        default="tiktoken", description="Token estimator: tiktoken or heuristic"
    )

    # Embedding configuration
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Provider embedding vector dimension")
    HASH_EMBEDDING_DIM: int = Field(default=256, description="Fallback hashed embedding dimension")
    EMBEDDING_MAX_TOKENS: int = Field(
        default=512, description="Per-text token budget before embedding"
    )

    # Model fallback chains (comma separated provider:model)
    EXTRACT_MODELS: str = Field(
        default="groq:llama-3.1-8b-instant,openai:gpt-4o-mini",
        description="Models for the extractive bullet pass",
    )
    COMPRESS_MODELS: str = Field(
        default="groq:llama-3.1-8b-instant,openai:gpt-4o-mini",
        description="Models for recap compression",
    )
    PRIMER_MODELS: str = Field(
        default="groq:llama-3.3-70b-versatile,openai:gpt-4o-mini,anthropic:claude-3-5-haiku-latest",
        description="Models for primer synthesis",
    )
    REPAIR_MODELS: str = Field(
        default="openai:gpt-4o-mini,groq:llama-3.1-8b-instant",
        description="Models for row and document repair",
    )
    DEEP_CONTEXT_MODELS: str = Field(
        default="groq:llama-3.1-8b-instant,openai:gpt-4o-mini",
        description="Models for deep context generation",
    )
    MAP_MODELS: str = Field(
        default="groq:llama-3.1-8b-instant,openai:gpt-4o-mini",
        description="Models for the map step of the map-reduce variant",
    )
    REDUCE_MODELS: str = Field(
        default="groq:llama-3.1-8b-instant,openai:gpt-4o-mini",
        description="Models for the reduce step of the map-reduce variant",
    )
    MAP_MODELS_PAID: str = Field(
        default="groq:llama-3.3-70b-versatile,openai:gpt-4o-mini",
        description="Paid-plan models for the map step",
    )
    REDUCE_MODELS_PAID: str = Field(
        default="groq:llama-3.3-70b-versatile,openai:gpt-4o",
        description="Paid-plan models for the reduce and refine steps",
    )
    PAID_PLANS: str = Field(
        default="pro,paid,vault,paid-tier", description="Plan names treated as paid"
    )

    # Selection
    SELECTION_K: int = Field(default=30, description="Maximum chunks kept after selection")
    SELECTION_MIN: int = Field(default=12, description="Minimum chunks kept by the anchor filter")
    MMR_LAMBDA: float = Field(default=0.72, description="MMR relevance/diversity balance")
    ANCHOR_THRESHOLDS: str = Field(
        default="0.35,0.32,0.30", description="Topic-anchor similarity thresholds, relaxed in order"
    )
    ANCHOR_TOP_N: int = Field(default=15, description="Top chunks by anchor similarity")
    ANCHOR_RECENT_N: int = Field(default=15, description="Most recent chunks always considered")
    RECALL_THRESHOLD: float = Field(default=0.32, description="Recall pool similarity floor")
    RECALL_MAX: int = Field(default=12, description="Maximum recall pool entries")

    # Extraction
    EVIDENCE_QUOTA: int = Field(default=12, description="Minimum extractive bullets before backfill")
    EXTRACT_CONCURRENCY: int = Field(default=10, description="Concurrent extractive calls")
    EXTRACT_TIMEOUT_S: float = Field(default=6.0, description="Per-chunk extraction timeout")
    QUOTE_MAX_CHARS: int = Field(default=60, description="Maximum quote length")

    # Compression
    COMPRESS_TIMEOUT_S: float = Field(default=12.0, description="Compression call timeout")
    COMPRESS_FIRST_MAX_TOKENS: int = Field(default=2000, description="First pass output cap")
    COMPRESS_SECOND_MAX_TOKENS: int = Field(default=1000, description="Second pass output cap")
    COMPRESS_DROP_MAX_TOKENS: int = Field(default=1800, description="Drop-and-recompress cap")
    COMPRESS_CEILING_TOKENS: int = Field(default=1900, description="Primary recap ceiling")
    COMPRESS_ABSOLUTE_TOKENS: int = Field(default=4000, description="Absolute recap ceiling")
    COMPRESS_DROP_FRACTION: float = Field(
        default=0.3, description="Fraction of lowest-weighted bullets dropped"
    )

    # Primer, repair and deep context
    PRIMER_TIMEOUT_S: float = Field(default=8.0, description="Primer synthesis timeout")
    PRIMER_MAX_TOKENS: int = Field(default=1800, description="Primer output cap")
    REPAIR_TIMEOUT_S: float = Field(default=6.0, description="Row repair timeout")
    MAX_REPAIR_CALLS: int = Field(default=12, description="Row repair calls per run")
    DOCUMENT_REPAIR_TIMEOUT_S: float = Field(default=12.0, description="Document repair timeout")
    DEEP_CONTEXT_TIMEOUT_S: float = Field(default=10.0, description="Deep context timeout")
    DEEP_CONTEXT_MAX_TOKENS: int = Field(default=1200, description="Deep context part output cap")
    MIN_NEXT_ACTIONS: int = Field(default=6, description="Domain backstop row minimum")

    # Quality gate and assembly
    GATE_THRESHOLD: float = Field(default=0.9, description="Composite continuity score threshold")
    EVIDENCE_TARGET_SOURCED: float = Field(
        default=10.0, description="Target [S#] tags per 1000 words"
    )
    EVIDENCE_TARGET_EXTRACTIVE: float = Field(
        default=5.0, description="Target tags per 1000 words for extractive-only text"
    )
    BOUNDED_OUTPUT_TOKENS: int = Field(default=4000, description="Size-bounded output cap")
    BOUNDED_INPUT_TOKENS: int = Field(default=60000, description="Size-bounded input target")

    # Wall-clock budget
    BUDGET_TARGET_S: float = Field(default=60.0, description="Pipeline wall-clock target")
    BUDGET_CHECKPOINT_S: float = Field(default=45.0, description="Fast-path checkpoint")
    CALL_TIMEOUT_S: float = Field(default=12.0, description="Default completion timeout")

    # Rate-limit backoff (milliseconds)
    BACKOFF_START_MS: int = Field(default=1200, description="Initial backoff after a 429")
    BACKOFF_MULTIPLIER: float = Field(default=1.6, description="Backoff growth factor")
    BACKOFF_CAP_MS: int = Field(default=8000, description="Backoff ceiling")
    BACKOFF_JITTER_MS: int = Field(default=200, description="Jitter applied to each sleep")

    # Map-reduce variant
    MAP_CONCURRENCY: int = Field(default=10, description="Default map concurrency")
    MAP_CONCURRENCY_FREE_MAX: int = Field(default=15, description="Free plan concurrency ceiling")
    MAP_CONCURRENCY_PAID_MAX: int = Field(default=30, description="Paid plan concurrency ceiling")
    MAP_TIMEOUT_S: float = Field(default=12.0, description="Map call timeout")
    REDUCE_TIMEOUT_S: float = Field(default=30.0, description="Reduce call timeout")

    # Blocking result fetch
    RESULT_POLL_INTERVAL_S: float = Field(default=0.3, description="Result poll interval")
    RESULT_TIMEOUT_S: float = Field(default=60.0, description="Result fetch cap")

    @property
    def anchor_thresholds(self) -> list[float]:
        return [float(t) for t in parse_model_chain(self.ANCHOR_THRESHOLDS)]

    @property
    def paid_plans(self) -> set[str]:
        return {p.lower() for p in parse_model_chain(self.PAID_PLANS)}

    def is_paid(self, plan: str | None) -> bool:
        return (plan or "").strip().lower() in self.paid_plans


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
