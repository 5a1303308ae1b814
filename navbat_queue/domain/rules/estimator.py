from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

DEFAULT_WINDOW_SIZE = 6
DEFAULT_MIN_SAMPLES = 3
DEFAULT_MIN_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_INTERVAL_SECONDS = 3 * 60 * 60.0


def plausible_intervals(
    served_at_desc: Sequence[datetime],
    *,
    min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS,
    max_interval_seconds: float = DEFAULT_MAX_INTERVAL_SECONDS,
) -> list[float]:
    out: list[float] = []
    for newer, older in zip(served_at_desc, served_at_desc[1:]):
        delta = (newer - older).total_seconds()
        if min_interval_seconds < delta < max_interval_seconds:
            out.append(delta)
    return out


def estimate_avg_service_seconds(
    served_at_desc: Sequence[datetime],
    *,
    window_size: int = DEFAULT_WINDOW_SIZE,
    min_samples: int = DEFAULT_MIN_SAMPLES,
    min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS,
    max_interval_seconds: float = DEFAULT_MAX_INTERVAL_SECONDS,
) -> int | None:
    """
    Rolling average time between consecutive completions.

    `served_at_desc` is newest first. Only the newest `window_size`
    timestamps count. Returns None when fewer than `min_samples`
    plausible intervals remain; None means "no estimate", never zero.
    """
    window = sorted(served_at_desc[:window_size], reverse=True)
    intervals = plausible_intervals(
        window,
        min_interval_seconds=min_interval_seconds,
        max_interval_seconds=max_interval_seconds,
    )
    if len(intervals) < max(min_samples, 1):
        return None
    mean = sum(intervals) / len(intervals)
    return int(mean + 0.5)


def eta_seconds(number: int, now_serving: int, avg_service_seconds: int | None) -> int | None:
    if avg_service_seconds is None:
        return None
    return max(0, number - now_serving) * avg_service_seconds
