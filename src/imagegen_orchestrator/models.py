from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


class RequestStatus(str, Enum):
    PENDING = "pending"
    OPTIMIZING = "optimizing"
    GENERATING = "generating"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({RequestStatus.OPTIMIZING, RequestStatus.GENERATING, RequestStatus.EVALUATING})


class CompletionReason(str, Enum):
    SUCCESS = "SUCCESS"
    MAX_RETRIES_REACHED = "MAX_RETRIES_REACHED"
    DIMINISHING_RETURNS = "DIMINISHING_RETURNS"
    CANCELLED = "CANCELLED"
    ERROR = "ERROR"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MODERATE = "moderate"
    MINOR = "minor"


SEVERITY_RANK: dict[IssueSeverity, int] = {
    IssueSeverity.CRITICAL: 0,
    IssueSeverity.MAJOR: 1,
    IssueSeverity.MODERATE: 2,
    IssueSeverity.MINOR: 3,
}


class UserRole(str, Enum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    MANAGER = "manager"
    MEMBER = "member"


PRIVILEGED_ROLES = frozenset({UserRole.SUPERADMIN, UserRole.ADMIN})


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class ImageParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    aspect_ratio: str | None = None
    quality: str | None = None
    images_per_generation: int = Field(default=3, ge=1, le=4)
    plateau_window_size: int = Field(default=3, ge=2, le=10)
    plateau_threshold: float = Field(default=0.02, ge=0.001, le=0.5)


class RequestCosts(BaseModel):
    llm_tokens: int = Field(default=0, ge=0)
    image_generations: int = Field(default=0, ge=0)
    embedding_tokens: int = Field(default=0, ge=0)
    total_estimated_cost: float = Field(default=0.0, ge=0.0)


class CostDelta(BaseModel):
    """Usage to add to a request's running totals. Negative values are rejected."""

    model_config = ConfigDict(frozen=True)

    llm_tokens: int = Field(default=0, ge=0)
    image_generations: int = Field(default=0, ge=0)
    embedding_tokens: int = Field(default=0, ge=0)

    @property
    def is_empty(self) -> bool:
        return not (self.llm_tokens or self.image_generations or self.embedding_tokens)


class TopIssue(BaseModel):
    problem: str
    severity: IssueSeverity = IssueSeverity.MODERATE
    fix: str = ""


class ChecklistItem(BaseModel):
    passed: bool
    note: str | None = None


class AgentEvaluationSnapshot(BaseModel):
    agent_id: str
    agent_name: str
    image_id: str
    overall_score: float = Field(ge=0.0, le=100.0)
    category_scores: dict[str, float] | None = None
    feedback: str = ""
    weight: float = Field(default=1.0, gt=0.0)
    top_issue: TopIssue | None = None
    what_worked: list[str] | None = None
    checklist: dict[str, ChecklistItem] | None = None
    prompt_instructions: list[str] | None = None


class IterationSnapshot(BaseModel):
    iteration_number: int = Field(ge=1)
    optimized_prompt: str
    selected_image_id: str | None = None
    aggregate_score: float = Field(ge=0.0, le=100.0)
    evaluations: list[AgentEvaluationSnapshot] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


class GenerationRequest(BaseModel):
    """Persisted state of one generation request."""

    id: str = Field(default_factory=new_id)
    organization_id: str
    project_id: str | None = None
    space_id: str | None = None
    created_by: str | None = None
    brief: str
    initial_prompt: str | None = None
    reference_image_urls: list[str] = Field(default_factory=list)
    negative_prompts: str | None = None
    judge_ids: list[str]
    image_params: ImageParams = Field(default_factory=ImageParams)
    threshold: float = Field(default=75.0, ge=0.0, le=100.0)
    max_iterations: int = Field(default=5, ge=1)
    status: RequestStatus = RequestStatus.PENDING
    current_iteration: int = Field(default=0, ge=0)
    final_image_id: str | None = None
    completion_reason: CompletionReason | None = None
    iterations: list[IterationSnapshot] = Field(default_factory=list)
    costs: RequestCosts = Field(default_factory=RequestCosts)
    error_message: str | None = None
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def get_best_score(self) -> float:
        """Return the highest aggregate score recorded so far, 0 with no history."""
        if not self.iterations:
            return 0.0
        return max(iteration.aggregate_score for iteration in self.iterations)

    def best_iteration(self) -> IterationSnapshot | None:
        """Return the highest-scoring iteration; ties go to the earliest one."""
        best: IterationSnapshot | None = None
        for iteration in self.iterations:
            if iteration.selected_image_id is None:
                continue
            if best is None or iteration.aggregate_score > best.aggregate_score:
                best = iteration
        return best

    def latest_iteration(self) -> IterationSnapshot | None:
        return self.iterations[-1] if self.iterations else None


class GenerationParams(BaseModel):
    model: str | None = None
    aspect_ratio: str | None = None
    quality: str | None = None
    negative_prompts: str | None = None
    reference_image_urls: list[str] = Field(default_factory=list)


class GeneratedImage(BaseModel):
    id: str = Field(default_factory=new_id)
    request_id: str
    iteration_number: int = Field(ge=1)
    storage_key: str
    storage_url: str
    prompt_used: str
    generation_params: GenerationParams = Field(default_factory=GenerationParams)
    width: int | None = None
    height: int | None = None
    mime_type: str = "image/png"
    file_size_bytes: int | None = None
    created_at: datetime = Field(default_factory=utcnow)


class JudgeAgent(BaseModel):
    """A judge is plain data; every judge is dispatched through one evaluator."""

    id: str
    organization_id: str
    name: str
    system_prompt: str = ""
    evaluation_categories: str | None = None
    scoring_weight: float = Field(default=1.0, gt=0.0)
    can_judge: bool = True
    deleted: bool = False


class UserContext(BaseModel):
    user_id: str
    role: UserRole = UserRole.MEMBER

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class GenerationRequestCreate(BaseModel):
    """Validated input for creating a request.

    ``threshold``, ``max_iterations`` and ``image_params`` fall back to runtime
    defaults when omitted.
    """

    model_config = ConfigDict(extra="forbid")

    organization_id: str = Field(min_length=1)
    project_id: str | None = None
    space_id: str | None = None
    created_by: str | None = None
    brief: str
    initial_prompt: str | None = None
    reference_image_urls: list[str] = Field(default_factory=list)
    negative_prompts: str | None = None
    judge_ids: list[str] = Field(min_length=1)
    image_params: ImageParams | None = None
    threshold: int | None = Field(default=None, ge=1, le=100)
    max_iterations: int | None = Field(default=None, ge=1, le=20)

    @field_validator("brief")
    @classmethod
    def _brief_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("brief must be non-empty")
        return stripped

    @field_validator("reference_image_urls")
    @classmethod
    def _urls_not_blank(cls, value: list[str]) -> list[str]:
        cleaned = [url.strip() for url in value]
        if any(not url for url in cleaned):
            raise ValueError("reference_image_urls cannot contain empty entries")
        return cleaned

    @field_validator("judge_ids")
    @classmethod
    def _dedupe_judges(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for judge_id in value:
            judge_id = judge_id.strip()
            if not judge_id:
                raise ValueError("judge_ids cannot contain empty entries")
            if judge_id not in seen:
                seen.append(judge_id)
        return seen


class ContinuationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    extra_iterations: int = Field(default=5, ge=1, le=50)
    judge_ids: list[str] | None = None
    prompt_override: str | None = Field(default=None, max_length=10_000)

    @model_validator(mode="after")
    def _judges_not_empty(self) -> "ContinuationRequest":
        if self.judge_ids is not None and not [judge_id for judge_id in self.judge_ids if judge_id.strip()]:
            raise ValueError("judge_ids, when supplied, must contain at least one id")
        return self
