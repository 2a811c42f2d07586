from __future__ import annotations

from collections.abc import Sequence

from .models import IterationSnapshot

DEFAULT_WINDOW_SIZE = 3
DEFAULT_THRESHOLD = 0.02


def is_score_plateauing(
    scores: Sequence[float],
    window_size: int = DEFAULT_WINDOW_SIZE,
    threshold: float = DEFAULT_THRESHOLD,
) -> bool:
    """Return True when the last ``window_size`` scores stopped improving.

    The rule is relative to the window's peak, not absolute: the window is flat
    when ``max - min < threshold * max``. With ``threshold=0.02`` and a peak of
    81 the scores must sit within 1.62 points of each other. A window whose
    peak is 0 is never considered flat.
    """
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got: {window_size}")
    if len(scores) < window_size:
        return False
    window = scores[-window_size:]
    peak = max(window)
    spread = peak - min(window)
    return spread < threshold * peak


def is_plateauing(
    iterations: Sequence[IterationSnapshot],
    window_size: int = DEFAULT_WINDOW_SIZE,
    threshold: float = DEFAULT_THRESHOLD,
) -> bool:
    return is_score_plateauing(
        [iteration.aggregate_score for iteration in iterations],
        window_size=window_size,
        threshold=threshold,
    )
