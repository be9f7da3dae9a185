from __future__ import annotations

import time
from typing import Callable

# Every timestamp in the engine is epoch milliseconds from an injectable clock.
Clock = Callable[[], float]


def now_ms() -> float:
    """Returns the current epoch time in milliseconds."""
    return time.time() * 1000.0


def format_minutes(duration_ms: float) -> str:
    return f"{duration_ms / 60000:.1f}min"


def format_seconds(duration_ms: float) -> str:
    return f"{duration_ms / 1000:.0f}s"
