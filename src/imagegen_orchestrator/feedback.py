from __future__ import annotations

import re
from collections.abc import Sequence

from .models import SEVERITY_RANK, AgentEvaluationSnapshot, GenerationRequest
from .providers import JudgeFeedback, PriorFeedback

MAX_NEW_NEGATIVE_LINES = 3
MAX_NEGATIVE_LINES = 10

_AVOID_LINE = re.compile(r"^AVOID:\s*(?P<problem>.+?)(?:\s+-\s+.*?)?(?:\s+\(from [^)]*\))?$")


def build_prior_feedback(request: GenerationRequest) -> PriorFeedback | None:
    """Collect what the optimizer needs from history; None before the first iteration."""
    latest = request.latest_iteration()
    if latest is None:
        return None
    judge_feedback = [
        JudgeFeedback(
            agent_id=evaluation.agent_id,
            agent_name=evaluation.agent_name,
            score=evaluation.overall_score,
            weight=evaluation.weight,
            feedback=evaluation.feedback,
            top_issue=evaluation.top_issue,
            what_worked=evaluation.what_worked or [],
            prompt_instructions=evaluation.prompt_instructions or [],
        )
        for evaluation in latest.evaluations
    ]
    return PriorFeedback(
        current_prompt=latest.optimized_prompt,
        judge_feedback=judge_feedback,
        previous_prompts=[iteration.optimized_prompt for iteration in request.iterations],
        negative_prompts=request.negative_prompts,
        has_reference_images=bool(request.reference_image_urls),
    )


def accumulate_negative_prompts(existing: str | None, evaluations: Sequence[AgentEvaluationSnapshot]) -> str | None:
    """Fold the judges' top issues into the request's avoid-list.

    Issues are taken most severe first as ``AVOID: problem - fix (from judge)``
    lines, at most three new lines per call, skipping duplicates, and the list
    keeps only its newest ten lines.
    """
    lines = [line for line in (existing or "").splitlines() if line.strip()]
    known = {_problem_of(line) for line in lines}
    issues = sorted(
        (
            evaluation
            for evaluation in evaluations
            if evaluation.top_issue is not None and evaluation.top_issue.problem.strip()
        ),
        key=lambda evaluation: SEVERITY_RANK[evaluation.top_issue.severity],
    )
    added = 0
    for evaluation in issues:
        if added >= MAX_NEW_NEGATIVE_LINES:
            break
        issue = evaluation.top_issue
        problem = issue.problem.strip()
        if problem.lower() in known:
            continue
        known.add(problem.lower())
        fix = issue.fix.strip()
        body = f"{problem} - {fix}" if fix else problem
        lines.append(f"AVOID: {body} (from {evaluation.agent_name})")
        added += 1
    lines = lines[-MAX_NEGATIVE_LINES:]
    return "\n".join(lines) if lines else None


def _problem_of(line: str) -> str:
    """Normalized problem text of an avoid-list line; free-form lines compare whole."""
    match = _AVOID_LINE.match(line.strip())
    text = match.group("problem") if match else line
    return text.strip().lower()
