from __future__ import annotations


def exponential_delay(
    base: float,
    attempt: int,
    *,
    factor: float = 2.0,
    cap: float | None = None,
) -> float:
    """``base * factor ** attempt``, optionally capped."""
    delay = base * (factor ** attempt)
    if cap is not None:
        delay = min(delay, cap)
    return delay
