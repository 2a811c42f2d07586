from __future__ import annotations

import pytest

from imagegen_orchestrator import get_version
from imagegen_orchestrator.canonical import to_canonical_json
from imagegen_orchestrator.completion import resolve_completion
from imagegen_orchestrator.costs import PriceSheet, apply_cost_delta
from imagegen_orchestrator.errors import ExternalProviderError, truncate_error_message
from imagegen_orchestrator.feedback import accumulate_negative_prompts, build_prior_feedback
from imagegen_orchestrator.models import (
    AgentEvaluationSnapshot,
    CompletionReason,
    CostDelta,
    GenerationRequest,
    ImageParams,
    IssueSeverity,
    IterationSnapshot,
    RequestCosts,
    RequestStatus,
    TopIssue,
)
from imagegen_orchestrator.plateau import is_plateauing, is_score_plateauing
from imagegen_orchestrator.providers import JudgeVerdict, RetryPolicy, call_with_retry
from imagegen_orchestrator.scoring import rank_candidates, weighted_score
from imagegen_orchestrator.settings import RuntimeSettings


def _iterations(scores: list[float]) -> list[IterationSnapshot]:
    return [
        IterationSnapshot(
            iteration_number=index,
            optimized_prompt=f"prompt {index}",
            selected_image_id=f"img-{index}",
            aggregate_score=score,
        )
        for index, score in enumerate(scores, start=1)
    ]


def _request(scores: list[float], **overrides: object) -> GenerationRequest:
    fields: dict[str, object] = {
        "organization_id": "org-1",
        "brief": "brief",
        "judge_ids": ["judge-a"],
        "threshold": 85,
        "max_iterations": 5,
        "iterations": _iterations(scores),
        "current_iteration": len(scores),
        "status": RequestStatus.EVALUATING,
    }
    fields.update(overrides)
    return GenerationRequest.model_validate(fields)


def _evaluation(agent: str, score: float, weight: float = 1.0, issue: TopIssue | None = None) -> AgentEvaluationSnapshot:
    return AgentEvaluationSnapshot(
        agent_id=agent,
        agent_name=agent.title(),
        image_id="img-1",
        overall_score=score,
        weight=weight,
        top_issue=issue,
    )


# -- Plateau detection --


def test_plateau_examples() -> None:
    assert is_score_plateauing([80, 81, 80.5], window_size=3, threshold=0.02) is True
    assert is_score_plateauing([60, 85, 90], window_size=3, threshold=0.02) is False


def test_plateau_requires_full_window() -> None:
    for window_size in (2, 3, 5):
        for threshold in (0.001, 0.02, 0.5):
            assert is_plateauing(_iterations([50.0] * (window_size - 1)), window_size, threshold) is False


def test_plateau_only_looks_at_trailing_window() -> None:
    assert is_score_plateauing([10, 90, 90, 90], window_size=3) is True
    assert is_score_plateauing([90, 90, 10], window_size=3) is False


def test_plateau_is_relative_to_peak() -> None:
    # Spread of 1 point is flat near 81 but not near 40.
    assert is_score_plateauing([40, 41, 40.5], window_size=3, threshold=0.02) is False
    assert is_score_plateauing([0, 0, 0], window_size=3) is False


def test_plateau_rejects_invalid_window() -> None:
    with pytest.raises(ValueError):
        is_score_plateauing([1, 2, 3], window_size=0)


# -- Completion resolver --


def test_best_score_is_zero_without_history() -> None:
    assert _request([]).get_best_score() == 0
    assert _request([60, 65, 63]).get_best_score() == 65


def test_resolver_continues_below_threshold() -> None:
    assert resolve_completion(_request([70])) is None


def test_resolver_success_uses_latest_image() -> None:
    decision = resolve_completion(_request([70, 88]))
    assert decision is not None
    assert decision.status is RequestStatus.COMPLETED
    assert decision.reason is CompletionReason.SUCCESS
    assert decision.final_image_id == "img-2"


def test_resolver_max_iterations_picks_global_best() -> None:
    decision = resolve_completion(_request([60, 65, 63], max_iterations=3))
    assert decision is not None
    assert decision.reason is CompletionReason.MAX_RETRIES_REACHED
    assert decision.final_image_id == "img-2"


def test_resolver_best_image_ties_go_to_earliest() -> None:
    decision = resolve_completion(_request([60, 70, 70], max_iterations=3))
    assert decision is not None
    assert decision.final_image_id == "img-2"


def test_resolver_plateau_reports_diminishing_returns() -> None:
    decision = resolve_completion(_request([80, 81, 80.5], max_iterations=10))
    assert decision is not None
    assert decision.reason is CompletionReason.DIMINISHING_RETURNS
    assert decision.final_image_id == "img-2"


def test_resolver_respects_configured_plateau_window() -> None:
    request = _request([80, 81, 80.5], max_iterations=10, image_params=ImageParams(plateau_window_size=4))
    assert resolve_completion(request) is None


def test_resolver_rule_order() -> None:
    cancelled = resolve_completion(_request([90], cancel_requested=True))
    assert cancelled is not None and cancelled.reason is CompletionReason.CANCELLED
    assert cancelled.final_image_id is None

    # Success outranks budget exhaustion.
    success = resolve_completion(_request([60, 90], max_iterations=2))
    assert success is not None and success.reason is CompletionReason.SUCCESS

    # Budget exhaustion outranks plateau.
    exhausted = resolve_completion(_request([80, 81, 80.5], max_iterations=3))
    assert exhausted is not None and exhausted.reason is CompletionReason.MAX_RETRIES_REACHED


# -- Scoring and feedback --


def test_weighted_score_uses_weights() -> None:
    assert weighted_score([_evaluation("a", 60, 1.0), _evaluation("b", 80, 3.0)]) == pytest.approx(75.0)
    assert weighted_score([]) == 0.0


def test_rank_candidates_prefers_earliest_on_tie() -> None:
    ranked = rank_candidates({"first": [_evaluation("a", 70)], "second": [_evaluation("a", 70)], "third": [_evaluation("a", 90)]})
    assert [candidate.image_id for candidate in ranked] == ["third", "first", "second"]


def test_negative_prompts_sorted_by_severity_and_capped() -> None:
    evaluations = [
        _evaluation("minor", 50, issue=TopIssue(problem="dull sky", severity=IssueSeverity.MINOR, fix="add clouds")),
        _evaluation("crit", 50, issue=TopIssue(problem="extra wheel", severity=IssueSeverity.CRITICAL, fix="two wheels")),
        _evaluation("major", 50, issue=TopIssue(problem="blurry logo", severity=IssueSeverity.MAJOR, fix="sharpen")),
        _evaluation("mod", 50, issue=TopIssue(problem="odd crop", severity=IssueSeverity.MODERATE, fix="center")),
    ]
    result = accumulate_negative_prompts(None, evaluations)
    assert result is not None
    assert result.splitlines() == [
        "AVOID: extra wheel - two wheels (from Crit)",
        "AVOID: blurry logo - sharpen (from Major)",
        "AVOID: odd crop - center (from Mod)",
    ]

    repeated = accumulate_negative_prompts(result, evaluations)
    assert repeated is not None
    assert "dull sky" in repeated
    assert repeated.count("extra wheel") == 1

    existing = "\n".join(f"AVOID: issue {index} - fix" for index in range(10))
    capped = accumulate_negative_prompts(existing, evaluations)
    assert capped is not None
    assert len(capped.splitlines()) == 10
    assert capped.splitlines()[-1].startswith("AVOID: odd crop")


def test_negative_prompts_match_whole_problems_only() -> None:
    existing = "AVOID: blurry text on sign - sharpen (from Brand)"
    text_issue = _evaluation("composition", 50, issue=TopIssue(problem="text", fix="remove lettering"))
    brand_issue = _evaluation("composition", 50, issue=TopIssue(problem="brand", fix="drop the logo"))

    assert accumulate_negative_prompts(existing, [text_issue]) == (
        f"{existing}\nAVOID: text - remove lettering (from Composition)"
    )
    assert accumulate_negative_prompts(existing, [brand_issue]) == (
        f"{existing}\nAVOID: brand - drop the logo (from Composition)"
    )


def test_negative_prompts_dedupe_is_case_and_whitespace_insensitive() -> None:
    existing = "AVOID: half-finished logo - redraw it (from Brand)\nno watermark"
    evaluations = [
        _evaluation("a", 50, issue=TopIssue(problem="  Half-Finished Logo ", fix="other fix")),
        _evaluation("b", 50, issue=TopIssue(problem="No Watermark", fix="x")),
        _evaluation("c", 50, issue=TopIssue(problem="muddy shadows", fix="")),
        _evaluation("d", 50, issue=TopIssue(problem="MUDDY shadows", fix="lift blacks")),
    ]
    assert accumulate_negative_prompts(existing, evaluations) == f"{existing}\nAVOID: muddy shadows (from C)"


def test_negative_prompts_skip_blank_problems() -> None:
    blank = _evaluation("composition", 50, issue=TopIssue(problem="   ", fix="f"))
    assert accumulate_negative_prompts(None, [blank]) is None
    assert accumulate_negative_prompts("no text", [blank]) == "no text"


def test_negative_prompts_unchanged_without_issues() -> None:
    assert accumulate_negative_prompts(None, [_evaluation("a", 70)]) is None
    assert accumulate_negative_prompts("no text", [_evaluation("a", 70)]) == "no text"


def test_prior_feedback_carries_previous_iteration() -> None:
    request = _request([70, 72])
    request.iterations[-1].evaluations.append(
        _evaluation("a", 72, issue=TopIssue(problem="glare", severity=IssueSeverity.MAJOR, fix="soften light"))
    )
    feedback = build_prior_feedback(request)
    assert feedback is not None
    assert feedback.current_prompt == "prompt 2"
    assert feedback.previous_prompts == ["prompt 1", "prompt 2"]
    assert feedback.judge_feedback[0].top_issue is not None
    assert build_prior_feedback(_request([])) is None


def test_judge_verdict_scores_are_clamped() -> None:
    assert JudgeVerdict(overall_score=140).overall_score == 100.0
    assert JudgeVerdict(overall_score=-3).overall_score == 0.0


# -- Costs --


def test_apply_cost_delta_is_additive_and_reprices() -> None:
    pricing = PriceSheet(per_image=0.5, per_1k_llm_tokens=1.0, per_1k_embedding_tokens=0.0)
    costs = apply_cost_delta(RequestCosts(), CostDelta(llm_tokens=1_000, image_generations=2), pricing)
    costs = apply_cost_delta(costs, CostDelta(llm_tokens=500), pricing)
    assert costs.llm_tokens == 1_500
    assert costs.image_generations == 2
    assert costs.total_estimated_cost == pytest.approx(2.5)


def test_cost_delta_rejects_negative_usage() -> None:
    with pytest.raises(ValueError):
        CostDelta(llm_tokens=-1)


def test_apply_cost_delta_never_lowers_estimate() -> None:
    costs = RequestCosts(llm_tokens=10, total_estimated_cost=5.0)
    updated = apply_cost_delta(costs, CostDelta(llm_tokens=10), lambda _totals: 1.0)
    assert updated.total_estimated_cost == 5.0


# -- Retry, errors, settings --


def test_call_with_retry_backs_off_exponentially() -> None:
    delays: list[float] = []
    attempts = iter([RuntimeError("one"), RuntimeError("two"), "ok"])

    def flaky() -> str:
        outcome = next(attempts)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert call_with_retry(flaky, label="flaky", policy=RetryPolicy(attempts=3, base_delay=1.0), sleep=delays.append) == "ok"
    assert delays == [1.0, 2.0]


def test_call_with_retry_wraps_final_failure() -> None:
    def broken() -> None:
        raise RuntimeError("down")

    with pytest.raises(ExternalProviderError, match="down"):
        call_with_retry(broken, label="broken", policy=RetryPolicy(attempts=2, base_delay=0.0), sleep=lambda _s: None)


def test_truncate_error_message() -> None:
    assert truncate_error_message("boom") == "boom"
    assert len(truncate_error_message("x" * 5_000)) == 2_000


def test_canonical_json_is_order_independent() -> None:
    left = {"b": 2, "a": 1, "nested": {"z": 9, "y": [3, 2, 1]}}
    right = {"nested": {"y": [3, 2, 1], "z": 9}, "a": 1, "b": 2}
    assert to_canonical_json(left) == to_canonical_json(right)
    with pytest.raises(TypeError):
        to_canonical_json({"data": b"\x89PNG"})


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IMAGEGEN_DEFAULT_THRESHOLD", "80")
    monkeypatch.setenv("IMAGEGEN_DEFAULT_PLATEAU_THRESHOLD", "0.05")
    monkeypatch.setenv("IMAGEGEN_JUDGE_MODEL", "  gpt-4o-mini  ")
    settings = RuntimeSettings.from_env()
    assert settings.default_threshold == 80
    assert settings.default_plateau_threshold == 0.05
    assert settings.judge_model == "gpt-4o-mini"
    assert settings.checkpoint_path() is None


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("IMAGEGEN_DEFAULT_THRESHOLD", "0"),
        ("IMAGEGEN_DEFAULT_MAX_ITERATIONS", "abc"),
        ("IMAGEGEN_DEFAULT_PLATEAU_THRESHOLD", "0.9"),
        ("IMAGEGEN_OPTIMIZER_MODEL", "   "),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_get_version_falls_back_when_not_installed() -> None:
    assert isinstance(get_version(), str)
