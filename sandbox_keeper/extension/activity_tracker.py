# activity_tracker.py
"""
Activity Tracker - weighted, time-decayed activity scores.

Each recorded activity contributes weight(type) * e^(-age / window) to the
score of every window it falls inside, so recent activity dominates smoothly
instead of dropping off at a hard cutoff.

The log is pruned to the medium window on every write and capped at
MAX_TRACKED_ACTIVITIES entries.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Union

from sandbox_keeper.extension.extension_config import ActivityType, AdaptiveExtensionConfig
from sandbox_keeper.utils.logging_config import get_logger
from sandbox_keeper.utils.time_utils import Clock, now_ms

logger = get_logger(__name__)

MAX_TRACKED_ACTIVITIES = 200


@dataclass(frozen=True)
class ActivityRecord:
    timestamp_ms: float
    activity_type: ActivityType


@dataclass(frozen=True)
class ActivityScores:
    recent: float = 0.0  # last 1 minute by default
    short: float = 0.0   # last 5 minutes
    medium: float = 0.0  # last 15 minutes

    def to_dict(self) -> Dict[str, float]:
        return {k: round(v, 3) for k, v in asdict(self).items()}


class ActivityTracker:
    """Tracks user activities with weighted scoring and exponential decay."""

    def __init__(self, config: AdaptiveExtensionConfig, clock: Optional[Clock] = None):
        self.config = config
        self._clock = clock or now_ms
        self._activities: List[ActivityRecord] = []

    def record_activity(self, activity_type: Union[ActivityType, str]) -> ActivityRecord:
        """Record a new activity at the current time."""
        record = ActivityRecord(timestamp_ms=self._clock(), activity_type=ActivityType(activity_type))
        self._activities.append(record)

        # Prune everything older than the longest window
        cutoff = record.timestamp_ms - self.config.time_windows.medium
        self._activities = [a for a in self._activities if a.timestamp_ms >= cutoff]

        if len(self._activities) > MAX_TRACKED_ACTIVITIES:
            self._activities = self._activities[-MAX_TRACKED_ACTIVITIES:]

        return record

    def get_activity_score(self, window_ms: float) -> float:
        """Weighted activity score over window_ms with exponential decay."""
        now = self._clock()
        cutoff = now - window_ms
        weights = self.config.activity_weights

        score = 0.0
        for activity in self._activities:
            if activity.timestamp_ms < cutoff:
                continue
            age = max(0.0, now - activity.timestamp_ms)
            score += weights.weight_for(activity.activity_type) * math.exp(-age / window_ms)
        return score

    def get_activity_scores(self) -> ActivityScores:
        windows = self.config.time_windows
        return ActivityScores(
            recent=self.get_activity_score(windows.recent),
            short=self.get_activity_score(windows.short),
            medium=self.get_activity_score(windows.medium),
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_activity_count(self, window_ms: float) -> int:
        cutoff = self._clock() - window_ms
        return sum(1 for a in self._activities if a.timestamp_ms >= cutoff)

    def get_activity_breakdown(self, window_ms: float) -> Dict[ActivityType, int]:
        cutoff = self._clock() - window_ms
        breakdown = {activity_type: 0 for activity_type in ActivityType}
        for activity in self._activities:
            if activity.timestamp_ms >= cutoff:
                breakdown[activity.activity_type] += 1
        return breakdown

    def get_recent_activities(self, count: int) -> List[ActivityRecord]:
        if count <= 0:
            return []
        return list(self._activities[-count:])

    def get_total_activities(self) -> int:
        return len(self._activities)

    def clear(self) -> None:
        self._activities = []
        logger.debug("Activity log cleared")
