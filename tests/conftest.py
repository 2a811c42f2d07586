from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from imagegen_orchestrator.continuation import ContinuationManager
from imagegen_orchestrator.events import GenerationEvent, GenerationEvents
from imagegen_orchestrator.lifecycle import GenerationRequestService
from imagegen_orchestrator.loops import IterationLoop
from imagegen_orchestrator.models import GeneratedImage, GenerationRequest, ImageParams, JudgeAgent, TopIssue
from imagegen_orchestrator.providers import JudgeVerdict, PriorFeedback, RetryPolicy, SynthesizedImage
from imagegen_orchestrator.registry import InMemoryAgentRegistry
from imagegen_orchestrator.settings import RuntimeSettings
from imagegen_orchestrator.state_store import GenerationStateStore
from imagegen_orchestrator.storage import FilesystemObjectStorage


class RecordingOptimizer:
    def __init__(self) -> None:
        self.calls: list[tuple[str, PriorFeedback | None]] = []

    def optimize(self, brief: str, prior_feedback: PriorFeedback | None = None) -> str:
        self.calls.append((brief, prior_feedback))
        return f"optimized prompt v{len(self.calls)}"


class FakeSynthesizer:
    model_name = "fake-image-model"

    def __init__(self, *, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[dict[str, Any]] = []

    def generate(
        self,
        prompt: str,
        reference_image_urls: Sequence[str],
        negative_prompts: str | None,
        count: int,
        params: ImageParams,
    ) -> list[SynthesizedImage]:
        self.calls.append(
            {
                "prompt": prompt,
                "reference_image_urls": list(reference_image_urls),
                "negative_prompts": negative_prompts,
                "count": count,
            }
        )
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("synthesis backend unavailable")
        return [
            SynthesizedImage(data=f"{prompt}|candidate-{index}".encode(), mime_type="image/png", width=64, height=64)
            for index in range(count)
        ]


ScoreFunction = Callable[[JudgeAgent, GeneratedImage], float]


class ScriptedJudge:
    """Returns scores from a callback; optionally attaches a top issue and token usage."""

    def __init__(
        self,
        score_for: ScoreFunction,
        *,
        top_issue: TopIssue | None = None,
        llm_tokens: int = 0,
        on_evaluate: Callable[[GeneratedImage], None] | None = None,
    ) -> None:
        self.score_for = score_for
        self.top_issue = top_issue
        self.llm_tokens = llm_tokens
        self.on_evaluate = on_evaluate
        self.calls: list[tuple[str, str]] = []

    def evaluate(self, judge: JudgeAgent, image: GeneratedImage, brief: str) -> JudgeVerdict:
        self.calls.append((judge.id, image.id))
        if self.on_evaluate is not None:
            self.on_evaluate(image)
        return JudgeVerdict(
            overall_score=self.score_for(judge, image),
            feedback=f"{judge.name} reviewed iteration {image.iteration_number}",
            top_issue=self.top_issue,
            what_worked=["composition"],
            prompt_instructions=["keep the horizon level"],
            llm_tokens=self.llm_tokens,
        )


def scores_by_iteration(scores: Sequence[float]) -> ScriptedJudge:
    return ScriptedJudge(lambda _judge, image: scores[image.iteration_number - 1])


@dataclass
class Harness:
    store: GenerationStateStore
    registry: InMemoryAgentRegistry
    storage: FilesystemObjectStorage
    settings: RuntimeSettings
    service: GenerationRequestService
    continuation: ContinuationManager
    events: GenerationEvents
    received: list[GenerationEvent] = field(default_factory=list)

    def create(self, **overrides: Any) -> GenerationRequest:
        payload: dict[str, Any] = {
            "organization_id": "org-1",
            "created_by": "user-1",
            "brief": "A red bicycle leaning on a beach hut at sunset",
            "judge_ids": ["judge-a"],
            "threshold": 85,
            "max_iterations": 5,
            "image_params": {"images_per_generation": 1},
        }
        payload.update(overrides)
        return self.service.create(payload)

    def loop(
        self,
        judge: ScriptedJudge,
        *,
        optimizer: RecordingOptimizer | None = None,
        synthesizer: FakeSynthesizer | None = None,
        **kwargs: Any,
    ) -> IterationLoop:
        return IterationLoop(
            store=self.store,
            registry=self.registry,
            optimizer=optimizer if optimizer is not None else RecordingOptimizer(),
            synthesizer=synthesizer if synthesizer is not None else FakeSynthesizer(),
            evaluator=judge,
            storage=self.storage,
            settings=kwargs.pop("settings", self.settings),
            events=self.events,
            retry_policy=kwargs.pop("retry_policy", RetryPolicy(attempts=3, base_delay=0.0)),
            sleep=lambda _seconds: None,
            **kwargs,
        )


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    settings = RuntimeSettings(
        database_path=str(tmp_path / "imagegen.sqlite3"),
        storage_root=str(tmp_path / "objects"),
        run_deadline_seconds=0,
    )
    registry = InMemoryAgentRegistry(
        [
            JudgeAgent(id="judge-a", organization_id="org-1", name="Composition", scoring_weight=1.0),
            JudgeAgent(id="judge-b", organization_id="org-1", name="Brand", scoring_weight=3.0),
            JudgeAgent(id="judge-foreign", organization_id="org-2", name="Elsewhere"),
            JudgeAgent(id="writer", organization_id="org-1", name="Copywriter", can_judge=False),
        ]
    )
    store = GenerationStateStore(Path(settings.database_path))
    storage = FilesystemObjectStorage(Path(settings.storage_root))
    events = GenerationEvents()
    built = Harness(
        store=store,
        registry=registry,
        storage=storage,
        settings=settings,
        service=GenerationRequestService(store=store, registry=registry, settings=settings),
        continuation=ContinuationManager(store=store, registry=registry),
        events=events,
    )
    events.subscribe(built.received.append)
    return built
