from __future__ import annotations

from dataclasses import dataclass

from .models import CompletionReason, GenerationRequest, RequestStatus
from .plateau import is_plateauing


@dataclass(frozen=True)
class CompletionDecision:
    status: RequestStatus
    reason: CompletionReason
    final_image_id: str | None = None

    @property
    def is_success(self) -> bool:
        return self.reason is CompletionReason.SUCCESS


def select_final_image(request: GenerationRequest) -> str | None:
    """Image of the globally best iteration, earliest wins ties."""
    best = request.best_iteration()
    return best.selected_image_id if best is not None else None


def resolve_completion(request: GenerationRequest) -> CompletionDecision | None:
    """Decide whether a request is finished after its latest iteration.

    Rules are checked in order and the first match wins:

    1. cancellation flag set -> CANCELLED
    2. latest score reached ``threshold`` -> COMPLETED/SUCCESS with that image
    3. ``current_iteration >= max_iterations`` -> COMPLETED/MAX_RETRIES_REACHED
    4. recent scores plateaued -> COMPLETED/DIMINISHING_RETURNS

    Rules 3 and 4 pick the best image over the whole history. Returns None
    when the loop should run another iteration.
    """
    if request.cancel_requested:
        return CompletionDecision(status=RequestStatus.CANCELLED, reason=CompletionReason.CANCELLED)

    latest = request.latest_iteration()
    if latest is not None and latest.aggregate_score >= request.threshold:
        return CompletionDecision(
            status=RequestStatus.COMPLETED,
            reason=CompletionReason.SUCCESS,
            final_image_id=latest.selected_image_id,
        )

    if request.current_iteration >= request.max_iterations:
        return CompletionDecision(
            status=RequestStatus.COMPLETED,
            reason=CompletionReason.MAX_RETRIES_REACHED,
            final_image_id=select_final_image(request),
        )

    params = request.image_params
    if is_plateauing(request.iterations, params.plateau_window_size, params.plateau_threshold):
        return CompletionDecision(
            status=RequestStatus.COMPLETED,
            reason=CompletionReason.DIMINISHING_RETURNS,
            final_image_id=select_final_image(request),
        )
    return None
