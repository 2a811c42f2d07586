"""LLM and OpenAI backed implementations of the provider capabilities."""

from __future__ import annotations

import base64
import logging
from collections.abc import Sequence
from pathlib import Path

from langchain_core.messages import HumanMessage, SystemMessage
from openai import OpenAI, OpenAIError
from pydantic import BaseModel, Field

from .errors import ExternalProviderError
from .llm import StructuredChat, build_chat_model, load_openai_api_key
from .models import ChecklistItem, GeneratedImage, ImageParams, JudgeAgent, TopIssue
from .providers import JudgeVerdict, PriorFeedback, SynthesizedImage
from .storage import ObjectStorage

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompt optimizer
# ---------------------------------------------------------------------------

_OPTIMIZER_SYSTEM_PROMPT = (
    "You write prompts for an image generation model. Given a creative brief and, when available, "
    "feedback from judges on the previous attempt, return one improved prompt. Apply every judge "
    "instruction, keep what worked, and fix the top issues. Return only the prompt text."
)


def render_optimizer_request(brief: str, prior_feedback: PriorFeedback | None) -> str:
    sections = [f"BRIEF:\n{brief}"]
    if prior_feedback is None:
        return "\n\n".join(sections)

    sections.append(f"CURRENT PROMPT:\n{prior_feedback.current_prompt}")
    for item in prior_feedback.judge_feedback:
        lines = [f"JUDGE {item.agent_name} (score {item.score:.1f}, weight {item.weight:g}):", item.feedback]
        if item.top_issue is not None:
            lines.append(
                f"Top issue [{item.top_issue.severity.value}]: {item.top_issue.problem} -> {item.top_issue.fix}"
            )
        lines.extend(f"Worked: {entry}" for entry in item.what_worked)
        lines.extend(f"Instruction: {entry}" for entry in item.prompt_instructions)
        sections.append("\n".join(line for line in lines if line))
    if prior_feedback.previous_prompts:
        history = "\n".join(f"{index}. {prompt}" for index, prompt in enumerate(prior_feedback.previous_prompts, 1))
        sections.append(f"PREVIOUS PROMPTS:\n{history}")
    if prior_feedback.negative_prompts:
        sections.append(f"AVOID:\n{prior_feedback.negative_prompts}")
    if prior_feedback.has_reference_images:
        sections.append("Reference images are attached to the generation request; keep the prompt consistent with them.")
    return "\n\n".join(sections)


class LLMPromptOptimizer:
    def __init__(self, *, model_name: str, temperature: float = 0.7, repo_root: Path | None = None) -> None:
        self.model_name = model_name
        self._model = build_chat_model(model_name, temperature=temperature, root=repo_root)

    def optimize(self, brief: str, prior_feedback: PriorFeedback | None = None) -> str:
        messages = [
            SystemMessage(content=_OPTIMIZER_SYSTEM_PROMPT),
            HumanMessage(content=render_optimizer_request(brief, prior_feedback)),
        ]
        response = self._model.invoke(messages)
        content = response.content if isinstance(response.content, str) else str(response.content)
        return content.strip()


# ---------------------------------------------------------------------------
# Judge evaluator
# ---------------------------------------------------------------------------


class _VerdictPayload(BaseModel):
    overall_score: float = Field(description="Overall score from 0 to 100")
    category_scores: dict[str, float] | None = Field(default=None, description="Score per evaluation category")
    feedback: str = Field(description="Concise critique of the image against the brief")
    top_issue: TopIssue | None = Field(default=None, description="The single most important problem to fix")
    what_worked: list[str] | None = Field(default=None, description="Elements to keep in the next attempt")
    checklist: dict[str, ChecklistItem] | None = None
    prompt_instructions: list[str] | None = Field(
        default=None, description="Verbatim directives for the next prompt revision"
    )


class LLMJudgeEvaluator:
    """Scores an image with a vision chat model using the judge's own system prompt."""

    def __init__(
        self,
        *,
        storage: ObjectStorage,
        model_name: str,
        temperature: float = 0.0,
        repo_root: Path | None = None,
    ) -> None:
        self.storage = storage
        self.model_name = model_name
        self._chat = StructuredChat.for_schema(
            _VerdictPayload, model_name=model_name, temperature=temperature, root=repo_root
        )

    @staticmethod
    def _system_prompt(judge: JudgeAgent) -> str:
        prompt = judge.system_prompt.strip() or f"You are {judge.name}, an expert image judge."
        if judge.evaluation_categories:
            prompt += f"\n\nEvaluation categories:\n{judge.evaluation_categories}"
        return prompt

    def evaluate(self, judge: JudgeAgent, image: GeneratedImage, brief: str) -> JudgeVerdict:
        encoded = base64.b64encode(self.storage.get(image.storage_key)).decode("ascii")
        messages = [
            SystemMessage(content=self._system_prompt(judge)),
            HumanMessage(
                content=[
                    {
                        "type": "text",
                        "text": (
                            f"BRIEF:\n{brief}\n\nPROMPT USED:\n{image.prompt_used}\n\n"
                            "Score the attached image against the brief."
                        ),
                    },
                    {"type": "image_url", "image_url": {"url": f"data:{image.mime_type};base64,{encoded}"}},
                ]
            ),
        ]
        reply = self._chat.ask(messages)
        return JudgeVerdict(**reply.value.model_dump(), llm_tokens=reply.tokens)


# ---------------------------------------------------------------------------
# Image synthesizer
# ---------------------------------------------------------------------------

_SIZES_BY_ASPECT_RATIO = {
    "1:1": "1024x1024",
    "4:3": "1536x1024",
    "3:2": "1536x1024",
    "16:9": "1536x1024",
    "3:4": "1024x1536",
    "2:3": "1024x1536",
    "9:16": "1024x1536",
}
_QUALITY_BY_LABEL = {"1K": "medium", "2K": "high", "4K": "high"}


def render_synthesis_prompt(prompt: str, reference_image_urls: Sequence[str], negative_prompts: str | None) -> str:
    parts = [prompt]
    if reference_image_urls:
        parts.append("Match the style and subject of these reference images:\n" + "\n".join(reference_image_urls))
    if negative_prompts:
        parts.append(f"Avoid the following:\n{negative_prompts}")
    return "\n\n".join(parts)


class OpenAIImageSynthesizer:
    def __init__(self, *, model_name: str = "gpt-image-1", repo_root: Path | None = None) -> None:
        self.model_name = model_name
        self._client = OpenAI(api_key=load_openai_api_key(repo_root))

    def generate(
        self,
        prompt: str,
        reference_image_urls: Sequence[str],
        negative_prompts: str | None,
        count: int,
        params: ImageParams,
    ) -> list[SynthesizedImage]:
        size = _SIZES_BY_ASPECT_RATIO.get(params.aspect_ratio or "1:1", "1024x1024")
        quality = _QUALITY_BY_LABEL.get(params.quality or "", "auto")
        try:
            response = self._client.images.generate(
                model=self.model_name,
                prompt=render_synthesis_prompt(prompt, reference_image_urls, negative_prompts),
                n=count,
                size=size,
                quality=quality,
            )
        except OpenAIError as exc:
            raise ExternalProviderError(f"image generation failed: {exc}") from exc

        width, height = (int(value) for value in size.split("x"))
        images = [
            SynthesizedImage(data=base64.b64decode(item.b64_json), mime_type="image/png", width=width, height=height)
            for item in response.data or []
            if item.b64_json
        ]
        logger.debug("image model %s returned %d of %d requested images", self.model_name, len(images), count)
        return images
