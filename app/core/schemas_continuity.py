"""Pydantic models for the continuity handoff pipeline.

Flow of types through a run:
  chunks (str) → Candidate (saliency) → ExtractiveBullet → dense recap (str)
  → raw primer dict → PrimerBundle → QualityScore / GateDecision → handoff text

The raw primer dict coming back from a model is never trusted directly; it
goes through app.core.primer_schema.enforce_primer_schema which produces a
PrimerBundle with every required key populated.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

SENTINEL = "Insufficient evidence [ref]"

Owner = Literal[
    "Founder", "Product", "Engineering", "Design", "Research", "Growth", "Ops", "Legal", "Data"
]
OWNERS: tuple[str, ...] = (
    "Founder",
    "Product",
    "Engineering",
    "Design",
    "Research",
    "Growth",
    "Ops",
    "Legal",
    "Data",
)

JobStage = Literal["mapping", "reduce", "final"]
JobStatus = Literal["running", "done", "failed"]
Revision = Literal["map_reduce", "selective", "bounded"]


# =============================================================================
# Pipeline intermediates
# =============================================================================


class ExtractiveBullet(BaseModel):
    """One evidence-tagged bullet drawn from a single chunk."""

    text: str = Field(..., description="Bullet text")
    quote: str = Field(default="", description="Verbatim substring of the source, at most 60 chars")
    source_id: str = Field(..., description="Per-run chunk tag, e.g. [C3]")
    verified: bool = Field(default=True, description="Quote was found in the source chunk")
    weight: float = Field(default=1.0, description="Saliency weight inherited from the chunk")


class NextAction(BaseModel):
    """A structurally valid next-action row."""

    action: str = Field(..., description="Capitalized verb phrase containing 'producing <artifact>'")
    owner: Owner
    deps: str = Field(..., min_length=1)
    effort_h: float = Field(..., gt=0, lt=100)
    impact: Literal["▲", "▼"] = "▲"
    rollback: str = Field(..., min_length=1)
    evidence: str = Field(default="", description="Optional [S#]/[C#] reference")


class UserProfile(BaseModel):
    language: str = SENTINEL
    style: list[str] = Field(default_factory=list)
    wants: list[str] = Field(default_factory=list)
    avoid: list[str] = Field(default_factory=list)
    detail_level: str = "medium"
    format_prefs: list[str] = Field(default_factory=list)
    target_models: list[str] = Field(default_factory=list)


class FirstTask(BaseModel):
    bullets: list[str] = Field(default_factory=list, description="Exactly 3 after enforcement")
    acceptance: list[str] = Field(default_factory=list, description="Exactly 4 after enforcement")


class InjectionTemplates(BaseModel):
    gpt: str = ""
    claude: str = ""
    gemini: str = ""


class PrimerBundle(BaseModel):
    """The structured handoff: every key is present once enforced."""

    system_instructions: list[str] = Field(default_factory=list)
    receiving_guide: list[str] = Field(default_factory=list)
    user_profile: UserProfile = Field(default_factory=UserProfile)
    context_recap: str = SENTINEL
    key_facts: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    active_work: list[str] = Field(default_factory=list)
    open_questions: list[str] = Field(default_factory=list)
    next_actions: list[NextAction] = Field(default_factory=list)
    first_task: FirstTask = Field(default_factory=FirstTask)
    injection_templates: InjectionTemplates = Field(default_factory=InjectionTemplates)


REQUIRED_PRIMER_KEYS: tuple[str, ...] = tuple(PrimerBundle.model_fields.keys())


class QualityScore(BaseModel):
    primer_coverage: float = Field(..., ge=0, le=1)
    action_validity: float = Field(..., ge=0, le=1)
    evidence_density: float = Field(..., ge=0, le=1)
    generic_score: float = Field(..., ge=0, le=1, description="1.0 = no banned phrase leaked")
    composite: float = Field(..., ge=0, le=1)


class GateDecision(BaseModel):
    passed: bool
    reasons: list[str] = Field(default_factory=list)


# =============================================================================
# Policy
# =============================================================================


class PipelinePolicy(BaseModel):
    """Named knobs that distinguish the pipeline variants."""

    revision: Revision = "selective"
    noise_filter: bool = True
    topic_anchor: bool = True
    anchor_thresholds: list[float] = Field(default_factory=lambda: [0.35, 0.32, 0.30])
    selection_k: int = 30
    selection_min: int = 12
    mmr_lambda: float = 0.72
    input_token_target: int | None = None
    compress: bool = True
    max_output_tokens: int | None = None


# =============================================================================
# API payloads
# =============================================================================


class ConversationMessage(BaseModel):
    role: str = "user"
    content: str = ""


class HandoffStartRequest(BaseModel):
    """Start a handoff run over ordered conversation chunks."""

    title: str = Field(default="Untitled", description="Conversation title")
    thread_id: str = Field(..., description="Source conversation id")
    chunks: list[str] = Field(default_factory=list, description="Ordered chunk strings")
    messages: list[ConversationMessage] | None = Field(
        default=None, description="Raw messages; smart-chunked when chunks is empty"
    )
    text: str | None = Field(
        default=None, description="Raw transcript; character-chunked when neither chunks nor messages are given"
    )
    plan: str = Field(default="free", description="free or a paid plan name")
    user_id: str | None = None
    revision: Revision | None = Field(default=None, description="Pipeline variant selector")


class HandoffStartResponse(BaseModel):
    job_id: str
    meta: dict[str, Any] = Field(default_factory=dict)


class HandoffStatusResponse(BaseModel):
    job_id: str
    stage: JobStage
    status: JobStatus
    percent: int = 0
    has_result: bool = False
    result: str | None = None


class HandoffResultResponse(BaseModel):
    job_id: str
    stage: JobStage
    status: JobStatus
    result: str
    meta: dict[str, Any] = Field(default_factory=dict)


class CheckpointSaveRequest(BaseModel):
    thread_id: str
    title: str = "Untitled"
    content: str = Field(..., min_length=1)
    user_id: str | None = None


class CheckpointSaveResponse(BaseModel):
    id: str
    checkpoint_number: int
    content_hash: str
