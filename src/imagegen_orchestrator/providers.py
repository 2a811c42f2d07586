from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol, TypeVar

from pydantic import BaseModel, Field, field_validator

from .errors import ExternalProviderError
from .models import ChecklistItem, GeneratedImage, ImageParams, JudgeAgent, TopIssue

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Provider payloads
# ---------------------------------------------------------------------------


class SynthesizedImage(BaseModel):
    data: bytes
    mime_type: str = "image/png"
    width: int | None = None
    height: int | None = None


class JudgeFeedback(BaseModel):
    """One judge's view of the previous iteration's selected image."""

    agent_id: str
    agent_name: str
    score: float
    weight: float
    feedback: str = ""
    top_issue: TopIssue | None = None
    what_worked: list[str] = Field(default_factory=list)
    prompt_instructions: list[str] = Field(default_factory=list)


class PriorFeedback(BaseModel):
    current_prompt: str
    judge_feedback: list[JudgeFeedback] = Field(default_factory=list)
    previous_prompts: list[str] = Field(default_factory=list)
    negative_prompts: str | None = None
    has_reference_images: bool = False


class JudgeVerdict(BaseModel):
    overall_score: float
    category_scores: dict[str, float] | None = None
    feedback: str = ""
    top_issue: TopIssue | None = None
    what_worked: list[str] | None = None
    checklist: dict[str, ChecklistItem] | None = None
    prompt_instructions: list[str] | None = None
    llm_tokens: int = Field(default=0, ge=0)

    @field_validator("overall_score")
    @classmethod
    def _clamp_score(cls, value: float) -> float:
        return min(100.0, max(0.0, float(value)))


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class PromptOptimizer(Protocol):
    def optimize(self, brief: str, prior_feedback: PriorFeedback | None = None) -> str: ...


class ImageSynthesizer(Protocol):
    def generate(
        self,
        prompt: str,
        reference_image_urls: Sequence[str],
        negative_prompts: str | None,
        count: int,
        params: ImageParams,
    ) -> list[SynthesizedImage]: ...


class JudgeEvaluator(Protocol):
    def evaluate(self, judge: JudgeAgent, image: GeneratedImage, brief: str) -> JudgeVerdict: ...


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: waits ``base_delay * 2 ** (attempt - 1)`` between attempts."""

    attempts: int = 3
    base_delay: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))


def call_with_retry(
    operation: Callable[[], T],
    *,
    label: str,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Raises:
        ExternalProviderError: Wrapping the last failure once every attempt failed.
    """
    attempts = max(1, policy.attempts)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Exception as exc:  # noqa: BLE001 - wrapped below.
            last_error = exc
            if attempt == attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning("%s failed (attempt %d/%d): %s; retrying in %.2fs", label, attempt, attempts, exc, delay)
            sleep(delay)
    if isinstance(last_error, ExternalProviderError):
        raise last_error
    raise ExternalProviderError(f"{label} failed after {attempts} attempts: {last_error}") from last_error
