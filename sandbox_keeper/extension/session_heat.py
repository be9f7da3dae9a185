# session_heat.py
"""
Heat classifier.

Rules are checked in order and the first match wins:
- HOT:  every window at or above its HOT threshold
- WARM: every window at or above its WARM threshold
- COOL: any single window at or above its COOL threshold
- COLD: nothing else matched

HOT and WARM are conjunctive, COOL is disjunctive.
"""

from __future__ import annotations

from typing import Callable, Tuple

from sandbox_keeper.extension.activity_tracker import ActivityScores, ActivityTracker
from sandbox_keeper.extension.extension_config import (
    AdaptiveExtensionConfig,
    HeatThreshold,
    HeatThresholds,
    SessionHeat,
)

HeatRule = Tuple[SessionHeat, Callable[[ActivityScores, HeatThresholds], bool]]


def _meets_all(scores: ActivityScores, threshold: HeatThreshold) -> bool:
    return (
        scores.recent >= threshold.recent
        and scores.short >= threshold.short
        and scores.medium >= threshold.medium
    )


def _meets_any(scores: ActivityScores, threshold: HeatThreshold) -> bool:
    return (
        scores.recent >= threshold.recent
        or scores.short >= threshold.short
        or scores.medium >= threshold.medium
    )


HEAT_RULES: Tuple[HeatRule, ...] = (
    (SessionHeat.HOT, lambda scores, t: _meets_all(scores, t.hot)),
    (SessionHeat.WARM, lambda scores, t: _meets_all(scores, t.warm)),
    (SessionHeat.COOL, lambda scores, t: _meets_any(scores, t.cool)),
)


def classify_scores(scores: ActivityScores, thresholds: HeatThresholds) -> SessionHeat:
    for heat, rule in HEAT_RULES:
        if rule(scores, thresholds):
            return heat
    return SessionHeat.COLD


def calculate_session_heat(tracker: ActivityTracker, config: AdaptiveExtensionConfig) -> SessionHeat:
    """Classify the tracker's current window scores."""
    return classify_scores(tracker.get_activity_scores(), config.heat_thresholds)
