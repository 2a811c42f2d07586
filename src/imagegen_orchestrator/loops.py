from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, TypedDict

from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .completion import resolve_completion, select_final_image
from .errors import ExternalProviderError, StateError
from .events import GenerationEvents, GenerationEventType
from .feedback import accumulate_negative_prompts, build_prior_feedback
from .models import (
    ACTIVE_STATUSES,
    AgentEvaluationSnapshot,
    CompletionReason,
    CostDelta,
    GeneratedImage,
    GenerationParams,
    GenerationRequest,
    IterationSnapshot,
    JudgeAgent,
    RequestStatus,
    new_id,
)
from .providers import ImageSynthesizer, JudgeEvaluator, PromptOptimizer, RetryPolicy, call_with_retry
from .registry import AgentRegistry, resolve_judges
from .scoring import rank_candidates
from .settings import RuntimeSettings
from .state_store import GenerationStateStore
from .storage import ObjectStorage

logger = logging.getLogger(__name__)

_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp", "image/gif": "gif"}


def image_storage_key(organization_id: str, request_id: str, image_id: str, mime_type: str) -> str:
    extension = _EXTENSIONS.get(mime_type, "bin")
    return f"image-generation/{organization_id}/{request_id}/{image_id}.{extension}"


class IterationState(TypedDict, total=False):
    request_id: str
    judges: list[dict[str, Any]]
    start_iteration: int
    iteration: int
    deadline: float | None
    prompt: str
    image_ids: list[str]
    snapshot: dict[str, Any]
    stop_reason: str
    outcome: str


@dataclass
class LoopResult:
    request: GenerationRequest
    iterations_run: int
    thread_id: str | None = None

    @property
    def status(self) -> RequestStatus:
        return self.request.status

    @property
    def completion_reason(self) -> CompletionReason | None:
        return self.request.completion_reason

    @property
    def final_image_id(self) -> str | None:
        return self.request.final_image_id


class IterationLoop:
    """Drives one claimed request: optimize -> generate -> evaluate -> record -> resolve.

    Each phase node first checks the persisted cancellation flag and the run
    deadline, then advances the request status and calls its provider. An
    iteration only becomes visible once ``record`` appends the scored
    snapshot; anything that raises before that leaves history untouched and
    the whole run is recorded as FAILED/ERROR.
    """

    def __init__(
        self,
        *,
        store: GenerationStateStore,
        registry: AgentRegistry,
        optimizer: PromptOptimizer,
        synthesizer: ImageSynthesizer,
        evaluator: JudgeEvaluator,
        storage: ObjectStorage,
        settings: RuntimeSettings | None = None,
        events: GenerationEvents | None = None,
        retry_policy: RetryPolicy | None = None,
        checkpoint_path: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.registry = registry
        self.optimizer = optimizer
        self.synthesizer = synthesizer
        self.evaluator = evaluator
        self.storage = storage
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.events = events if events is not None else GenerationEvents()
        self.retry_policy = (
            retry_policy
            if retry_policy is not None
            else RetryPolicy(
                attempts=self.settings.provider_max_attempts,
                base_delay=self.settings.provider_retry_base_delay,
            )
        )
        self._sleep = sleep
        self._clock = clock
        self._checkpoint_conn: sqlite3.Connection | None = None
        self._checkpointer: SqliteSaver | None = None
        if checkpoint_path is not None:
            checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
            self._checkpoint_conn = sqlite3.connect(checkpoint_path, check_same_thread=False)
            self._checkpointer = SqliteSaver(self._checkpoint_conn)
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(IterationState)
        graph.add_node("optimize", self._optimize)
        graph.add_node("generate", self._generate)
        graph.add_node("evaluate", self._evaluate)
        graph.add_node("record", self._record)
        graph.add_node("resolve", self._resolve)
        graph.add_node("cancel", self._cancel)
        graph.add_node("exhausted", self._exhausted)

        graph.add_edge(START, "optimize")
        graph.add_edge("record", "resolve")
        graph.add_edge("cancel", END)
        graph.add_edge("exhausted", END)
        return graph

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _call(self, operation: Callable[[], Any], label: str) -> Any:
        return call_with_retry(operation, label=label, policy=self.retry_policy, sleep=self._sleep)

    def _enter_phase(self, request_id: str, status: RequestStatus) -> GenerationRequest:
        request = self.store.update_status(request_id, status)
        self.events.emit(request_id, GenerationEventType.STATUS_CHANGE, status=status.value)
        return request

    def _interruption(self, state: IterationState) -> Command[str] | None:
        """Route to ``cancel`` or ``exhausted`` when the run must stop before the next phase."""
        if self.store.is_cancel_requested(state["request_id"]):
            return Command(goto="cancel")
        deadline = state.get("deadline")
        if deadline is not None and self._clock() >= deadline:
            return Command(
                update={"stop_reason": f"run deadline of {self.settings.run_deadline_seconds}s exceeded"},
                goto="exhausted",
            )
        return None

    # ------------------------------------------------------------------
    # Phase nodes
    # ------------------------------------------------------------------

    def _optimize(self, state: IterationState) -> Command[str]:
        interrupted = self._interruption(state)
        if interrupted is not None:
            return interrupted
        request_id = state["request_id"]
        iteration = state["iteration"]
        request = self.store.get_request(request_id)
        if iteration > request.max_iterations:
            return Command(
                update={"stop_reason": f"iteration budget of {request.max_iterations} already used"},
                goto="exhausted",
            )
        request = self._enter_phase(request_id, RequestStatus.OPTIMIZING)

        previous = request.latest_iteration()
        if iteration == state["start_iteration"] and request.initial_prompt:
            logger.info("request %s iteration %d uses the initial prompt verbatim", request_id, iteration)
            return Command(update={"prompt": request.initial_prompt}, goto="generate")

        prompt = self._call(
            partial(self.optimizer.optimize, request.brief, build_prior_feedback(request)),
            label="prompt optimization",
        )
        prompt = (prompt or "").strip()
        if not prompt:
            prompt = previous.optimized_prompt if previous is not None else (request.initial_prompt or request.brief)
            logger.warning("request %s iteration %d: empty optimizer output, reusing prior prompt", request_id, iteration)
        return Command(update={"prompt": prompt}, goto="generate")

    def _generate(self, state: IterationState) -> Command[str]:
        interrupted = self._interruption(state)
        if interrupted is not None:
            return interrupted
        request_id = state["request_id"]
        iteration = state["iteration"]
        prompt = state["prompt"]
        request = self._enter_phase(request_id, RequestStatus.GENERATING)
        params = request.image_params

        candidates = self._call(
            partial(
                self.synthesizer.generate,
                prompt,
                list(request.reference_image_urls),
                request.negative_prompts,
                params.images_per_generation,
                params,
            ),
            label="image synthesis",
        )
        if not candidates:
            raise ExternalProviderError(f"image synthesis returned no images for iteration {iteration}")

        generation_params = GenerationParams(
            model=getattr(self.synthesizer, "model_name", None),
            aspect_ratio=params.aspect_ratio,
            quality=params.quality,
            negative_prompts=request.negative_prompts,
            reference_image_urls=list(request.reference_image_urls),
        )
        image_ids: list[str] = []
        for candidate in candidates:
            image_id = new_id()
            key = image_storage_key(request.organization_id, request_id, image_id, candidate.mime_type)
            url = self._call(
                partial(self.storage.put, key, candidate.data, candidate.mime_type),
                label="image upload",
            )
            self.store.create_image(
                GeneratedImage(
                    id=image_id,
                    request_id=request_id,
                    iteration_number=iteration,
                    storage_key=key,
                    storage_url=url,
                    prompt_used=prompt,
                    generation_params=generation_params,
                    width=candidate.width,
                    height=candidate.height,
                    mime_type=candidate.mime_type,
                    file_size_bytes=len(candidate.data),
                )
            )
            image_ids.append(image_id)
        self.store.update_costs(request_id, CostDelta(image_generations=len(image_ids)))
        logger.info("request %s iteration %d: stored %d candidates", request_id, iteration, len(image_ids))
        return Command(update={"image_ids": image_ids}, goto="evaluate")

    def _evaluate(self, state: IterationState) -> Command[str]:
        interrupted = self._interruption(state)
        if interrupted is not None:
            return interrupted
        request_id = state["request_id"]
        iteration = state["iteration"]
        request = self._enter_phase(request_id, RequestStatus.EVALUATING)
        judges = [JudgeAgent.model_validate(item) for item in state["judges"]]

        evaluations_by_image: dict[str, list[AgentEvaluationSnapshot]] = {}
        llm_tokens = 0
        for image_id in state["image_ids"]:
            image = self.store.get_image(image_id)
            for judge in judges:
                verdict = self._call(
                    partial(self.evaluator.evaluate, judge, image, request.brief),
                    label=f"judge {judge.name}",
                )
                llm_tokens += verdict.llm_tokens
                evaluations_by_image.setdefault(image_id, []).append(
                    AgentEvaluationSnapshot(
                        agent_id=judge.id,
                        agent_name=judge.name,
                        image_id=image_id,
                        overall_score=verdict.overall_score,
                        category_scores=verdict.category_scores,
                        feedback=verdict.feedback,
                        weight=judge.scoring_weight,
                        top_issue=verdict.top_issue,
                        what_worked=verdict.what_worked,
                        checklist=verdict.checklist,
                        prompt_instructions=verdict.prompt_instructions,
                    )
                )
        if llm_tokens:
            self.store.update_costs(request_id, CostDelta(llm_tokens=llm_tokens))

        ranked = rank_candidates(evaluations_by_image)
        if not ranked:
            raise ExternalProviderError(f"no evaluations were produced for iteration {iteration}")
        best = ranked[0]
        snapshot = IterationSnapshot(
            iteration_number=iteration,
            optimized_prompt=state["prompt"],
            selected_image_id=best.image_id,
            aggregate_score=best.score,
            evaluations=list(best.evaluations),
        )
        return Command(update={"snapshot": snapshot.model_dump(mode="json")}, goto="record")

    def _record(self, state: IterationState) -> dict[str, Any]:
        request_id = state["request_id"]
        snapshot = IterationSnapshot.model_validate(state["snapshot"])
        request = self.store.add_iteration(request_id, snapshot)

        negative_prompts = accumulate_negative_prompts(request.negative_prompts, snapshot.evaluations)
        if negative_prompts != request.negative_prompts:
            self.store.update_negative_prompts(request_id, negative_prompts)

        logger.info(
            "request %s iteration %d/%d scored %.2f (selected %s)",
            request_id,
            snapshot.iteration_number,
            request.max_iterations,
            snapshot.aggregate_score,
            snapshot.selected_image_id,
        )
        self.events.emit(
            request_id,
            GenerationEventType.ITERATION_COMPLETE,
            iteration=snapshot.iteration_number,
            score=snapshot.aggregate_score,
            selected_image_id=snapshot.selected_image_id,
        )
        return {}

    def _resolve(self, state: IterationState) -> Command[str]:
        request_id = state["request_id"]
        request = self.store.get_request(request_id)
        decision = resolve_completion(request)
        if decision is None:
            return Command(update={"iteration": state["iteration"] + 1}, goto="optimize")

        if decision.status is RequestStatus.CANCELLED:
            return Command(goto="cancel")
        final = self.store.complete(request_id, decision.final_image_id, decision.reason)
        logger.info(
            "request %s completed: %s after %d iterations (best %.2f)",
            request_id,
            decision.reason.value,
            final.current_iteration,
            final.get_best_score(),
        )
        self.events.emit(
            request_id,
            GenerationEventType.COMPLETED,
            reason=decision.reason.value,
            final_image_id=decision.final_image_id,
        )
        return Command(update={"outcome": final.status.value}, goto=END)

    def _cancel(self, state: IterationState) -> dict[str, Any]:
        request_id = state["request_id"]
        final = self.store.cancel(request_id)
        logger.info("request %s cancelled after %d iterations", request_id, final.current_iteration)
        self.events.emit(request_id, GenerationEventType.CANCELLED, iteration=final.current_iteration)
        return {"outcome": final.status.value}

    def _exhausted(self, state: IterationState) -> dict[str, Any]:
        """Stop early: keep the best image so far, or fail when nothing was recorded."""
        request_id = state["request_id"]
        reason = state.get("stop_reason", "run stopped early")
        request = self.store.get_request(request_id)
        final_image_id = select_final_image(request)
        if final_image_id is None:
            final = self.store.fail(request_id, reason)
            self.events.emit(request_id, GenerationEventType.FAILED, error=final.error_message)
        else:
            final = self.store.complete(request_id, final_image_id, CompletionReason.MAX_RETRIES_REACHED)
            self.events.emit(
                request_id,
                GenerationEventType.COMPLETED,
                reason=CompletionReason.MAX_RETRIES_REACHED.value,
                final_image_id=final_image_id,
            )
        logger.warning("request %s stopped early: %s", request_id, reason)
        return {"outcome": final.status.value}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, request_id: str) -> LoopResult:
        """Drive a claimed request until it terminates.

        Failures inside the loop are recorded on the request as FAILED/ERROR
        and are not raised to the caller.

        Raises:
            NotFoundError: If the id is unknown.
            StateError: If the request was not claimed first.
        """
        request = self.store.get_request(request_id)
        if request.status not in ACTIVE_STATUSES:
            raise StateError(
                f"generation request {request_id} is {request.status.value}; claim it before running"
            )
        start_iteration = request.current_iteration + 1
        deadline_seconds = self.settings.run_deadline_seconds
        logger.info(
            "starting request %s at iteration %d (max %d, threshold %.1f)",
            request_id,
            start_iteration,
            request.max_iterations,
            request.threshold,
        )
        thread_id = f"generation-{request_id}-{uuid.uuid4().hex[:8]}"
        try:
            judges = resolve_judges(self.registry, request.judge_ids, request.organization_id)
            self.graph.invoke(
                {
                    "request_id": request_id,
                    "judges": [judge.model_dump(mode="json") for judge in judges],
                    "start_iteration": start_iteration,
                    "iteration": start_iteration,
                    "deadline": self._clock() + deadline_seconds if deadline_seconds > 0 else None,
                },
                config={
                    "recursion_limit": self.settings.recursion_limit,
                    "configurable": {"thread_id": thread_id},
                },
            )
        except Exception as exc:  # noqa: BLE001 - recorded on the request.
            self._record_failure(request_id, exc)
        final = self.store.get_request(request_id)
        return LoopResult(
            request=final,
            iterations_run=final.current_iteration - start_iteration + 1,
            thread_id=thread_id if self._checkpointer is not None else None,
        )

    def claim(self, request_id: str) -> GenerationRequest:
        """Claim a PENDING request for this loop; raises ConcurrencyError if another claimant won."""
        claimed = self.store.claim(request_id)
        self.events.emit(request_id, GenerationEventType.STATUS_CHANGE, status=claimed.status.value)
        return claimed

    def claim_and_run(self, request_id: str) -> LoopResult:
        self.claim(request_id)
        return self.run(request_id)

    def close(self) -> None:
        """Release the checkpoint database; the loop must not run afterwards."""
        if self._checkpoint_conn is not None:
            self._checkpoint_conn.close()
            self._checkpoint_conn = None

    def _record_failure(self, request_id: str, exc: Exception) -> None:
        current = self.store.get_request(request_id)
        if current.is_terminal:
            logger.exception(
                "request %s raised after reaching %s; keeping terminal state", request_id, current.status.value
            )
            return
        logger.exception("request %s failed at iteration %d", request_id, current.current_iteration + 1)
        failed = self.store.fail(request_id, str(exc) or type(exc).__name__)
        self.events.emit(request_id, GenerationEventType.FAILED, error=failed.error_message)
