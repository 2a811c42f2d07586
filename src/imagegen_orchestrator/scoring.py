from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from .models import AgentEvaluationSnapshot


@dataclass(frozen=True)
class CandidateScore:
    image_id: str
    score: float
    evaluations: tuple[AgentEvaluationSnapshot, ...]


def weighted_score(evaluations: Sequence[AgentEvaluationSnapshot]) -> float:
    """Weight-normalized mean of ``overall_score``; 0 when there is no weight."""
    total_weight = sum(evaluation.weight for evaluation in evaluations)
    if total_weight <= 0:
        return 0.0
    return sum(evaluation.overall_score * evaluation.weight for evaluation in evaluations) / total_weight


def rank_candidates(evaluations_by_image: Mapping[str, Sequence[AgentEvaluationSnapshot]]) -> list[CandidateScore]:
    """Rank candidates best first. Equal scores keep candidate order, so the earliest wins."""
    candidates = [
        CandidateScore(image_id=image_id, score=weighted_score(evaluations), evaluations=tuple(evaluations))
        for image_id, evaluations in evaluations_by_image.items()
    ]
    return sorted(candidates, key=lambda candidate: candidate.score, reverse=True)
