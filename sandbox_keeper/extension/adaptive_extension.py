# adaptive_extension.py
"""
Adaptive Extension Strategy - decides whether to extend a sandbox session and by how much.

Decision gates (first failure wins):
1. trigger       - only extend once remaining time is at or below the trigger threshold
2. rate limit    - at most one extension per min_extend_interval
3. lifetime cap  - never extend past max_session_lifetime
4. cold          - no extension without meaningful activity
5. per-heat cap  - each heat has its own extension budget
6. cool backoff  - repeated COOL extensions need exponentially longer gaps

Streak state:
- consecutive HOT extensions raise the HOT duration multiplier (capped)
- consecutive COOL extensions raise the COOL backoff exponent
- any extension at a different heat resets the corresponding streak
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, Optional, Tuple

from sandbox_keeper.extension.activity_tracker import ActivityScores, ActivityTracker
from sandbox_keeper.extension.extension_config import AdaptiveExtensionConfig, SessionHeat
from sandbox_keeper.extension.session_heat import calculate_session_heat
from sandbox_keeper.utils.logging_config import get_logger
from sandbox_keeper.utils.time_utils import Clock, format_minutes, format_seconds, now_ms

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExtensionDecision:
    should_extend: bool
    reason: str
    heat: Optional[SessionHeat] = None
    duration: Optional[int] = None


def _zeroed_heat_counts() -> Dict[SessionHeat, int]:
    return {heat: 0 for heat in SessionHeat}


@dataclass
class ExtensionStrategyState:
    session_start_time: float
    total_extensions: int = 0
    extensions_by_heat: Dict[SessionHeat, int] = field(default_factory=_zeroed_heat_counts)
    last_extend_time: Optional[float] = None
    consecutive_hot_extensions: int = 0
    cool_extension_count: int = 0
    last_heat: SessionHeat = SessionHeat.COLD


@dataclass(frozen=True)
class ExtensionMetrics:
    session_start_time: float
    session_age: float
    total_extensions: int
    extensions_by_heat: Dict[SessionHeat, int]
    consecutive_hot_extensions: int
    cool_extension_count: int
    last_extend_time: Optional[float]
    current_heat: SessionHeat
    activity_scores: ActivityScores
    time_used: float
    time_remaining: float  # time left before the lifetime cap

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["extensions_by_heat"] = {h.value: n for h, n in self.extensions_by_heat.items()}
        data["current_heat"] = self.current_heat.value
        data["activity_scores"] = self.activity_scores.to_dict()
        return data


@dataclass
class GateContext:
    """Inputs shared by the gates of one should_extend call."""
    now: float
    time_remaining_ms: float
    tracker: ActivityTracker
    time_since_last_extend: Optional[float]
    session_age: float
    time_left_to_lifetime_cap: float
    heat: Optional[SessionHeat] = None


Gate = Callable[["AdaptiveExtensionStrategy", GateContext], Optional[ExtensionDecision]]


def _trigger_gate(strategy: "AdaptiveExtensionStrategy", ctx: GateContext) -> Optional[ExtensionDecision]:
    threshold = strategy.config.extension_trigger_threshold
    if ctx.time_remaining_ms > threshold:
        return ExtensionDecision(
            should_extend=False,
            reason=(
                f"Too early to extend ({format_minutes(ctx.time_remaining_ms)} remaining > "
                f"{format_minutes(threshold)} threshold)"
            ),
        )
    return None


def _rate_limit_gate(strategy: "AdaptiveExtensionStrategy", ctx: GateContext) -> Optional[ExtensionDecision]:
    min_interval = strategy.config.min_extend_interval
    if ctx.time_since_last_extend is not None and ctx.time_since_last_extend < min_interval:
        return ExtensionDecision(
            should_extend=False,
            reason=(
                f"Rate limited ({format_seconds(ctx.time_since_last_extend)} since last extend < "
                f"{format_seconds(min_interval)} minimum)"
            ),
        )
    return None


def _lifetime_cap_gate(strategy: "AdaptiveExtensionStrategy", ctx: GateContext) -> Optional[ExtensionDecision]:
    if ctx.time_left_to_lifetime_cap <= 0:
        return ExtensionDecision(
            should_extend=False,
            reason=(
                f"Session lifetime cap reached ({format_minutes(ctx.session_age)} >= "
                f"{format_minutes(strategy.config.max_session_lifetime)} max)"
            ),
        )
    return None


def _cold_gate(strategy: "AdaptiveExtensionStrategy", ctx: GateContext) -> Optional[ExtensionDecision]:
    ctx.heat = strategy.calculate_session_heat(ctx.tracker)
    if ctx.heat is SessionHeat.COLD:
        return ExtensionDecision(
            should_extend=False,
            reason="Session is COLD (no meaningful activity)",
            heat=ctx.heat,
        )
    return None


def _heat_cap_gate(strategy: "AdaptiveExtensionStrategy", ctx: GateContext) -> Optional[ExtensionDecision]:
    used = strategy.state.extensions_by_heat[ctx.heat]
    allowed = strategy.config.max_extensions.for_heat(ctx.heat)
    if used >= allowed:
        return ExtensionDecision(
            should_extend=False,
            reason=f"{ctx.heat.value.upper()} extension cap reached ({used} >= {allowed})",
            heat=ctx.heat,
        )
    return None


def _cool_backoff_gate(strategy: "AdaptiveExtensionStrategy", ctx: GateContext) -> Optional[ExtensionDecision]:
    cool_count = strategy.state.cool_extension_count
    if ctx.heat is not SessionHeat.COOL or cool_count <= 0:
        return None

    config = strategy.config
    required_gap = config.min_extend_interval * math.pow(config.backoff_multiplier, cool_count)
    elapsed = ctx.time_since_last_extend if ctx.time_since_last_extend is not None else math.inf
    if elapsed < required_gap:
        return ExtensionDecision(
            should_extend=False,
            reason=(
                f"COOL backoff ({format_seconds(elapsed)} < {format_seconds(required_gap)} "
                f"required for extension #{cool_count + 1})"
            ),
            heat=ctx.heat,
        )
    return None


EXTENSION_GATES: Tuple[Tuple[str, Gate], ...] = (
    ("trigger", _trigger_gate),
    ("rate_limit", _rate_limit_gate),
    ("lifetime_cap", _lifetime_cap_gate),
    ("cold", _cold_gate),
    ("heat_cap", _heat_cap_gate),
    ("cool_backoff", _cool_backoff_gate),
)


class AdaptiveExtensionStrategy:
    """
    Core adaptive extension strategy.

    One instance owns the streak and counter state for exactly one session;
    reset_session() starts a new session on the same instance.
    """

    def __init__(self, config: AdaptiveExtensionConfig, clock: Optional[Clock] = None):
        self.config = config
        self._clock = clock or now_ms
        self.state = ExtensionStrategyState(session_start_time=self._clock())

    def calculate_session_heat(self, tracker: ActivityTracker) -> SessionHeat:
        return calculate_session_heat(tracker, self.config)

    def should_extend(self, time_remaining_ms: float, tracker: ActivityTracker) -> ExtensionDecision:
        """Run the gate pipeline and return the first denial, or an approval."""
        now = self._clock()
        last_extend = self.state.last_extend_time
        session_age = now - self.state.session_start_time

        ctx = GateContext(
            now=now,
            time_remaining_ms=time_remaining_ms,
            tracker=tracker,
            time_since_last_extend=(now - last_extend) if last_extend is not None else None,
            session_age=session_age,
            time_left_to_lifetime_cap=self.config.max_session_lifetime - session_age,
        )

        for gate_name, gate in EXTENSION_GATES:
            decision = gate(self, ctx)
            if decision is not None:
                logger.debug(f"Extension denied at gate '{gate_name}': {decision.reason}")
                return decision

        duration = self.get_extension_duration(ctx.heat, ctx.time_left_to_lifetime_cap)
        scores = tracker.get_activity_scores()
        return ExtensionDecision(
            should_extend=True,
            reason=f"{ctx.heat.value.upper()} session (scores: {json.dumps(scores.to_dict())})",
            heat=ctx.heat,
            duration=duration,
        )

    def get_streak_multiplier(self) -> float:
        """Current HOT duration multiplier; 1.0 without a HOT streak."""
        streak = self.state.consecutive_hot_extensions
        if streak <= 0:
            return 1.0
        bounds = self.config.streak_multiplier
        return min(bounds.max, bounds.min + streak * bounds.increment)

    def get_extension_duration(self, heat: SessionHeat, time_left_to_lifetime_cap: float) -> int:
        """Base duration for heat, HOT streak multiplier applied, clamped to the lifetime cap."""
        heat = SessionHeat(heat)
        duration = self.config.extension_durations.for_heat(heat)

        if heat is SessionHeat.HOT and self.state.consecutive_hot_extensions > 0:
            duration = math.floor(duration * self.get_streak_multiplier())

        return int(min(duration, math.floor(time_left_to_lifetime_cap)))

    def record_extension(self, heat: SessionHeat, duration: int) -> None:
        """Record a granted extension and advance the streak counters."""
        heat = SessionHeat(heat)
        state = self.state
        state.total_extensions += 1
        state.extensions_by_heat[heat] += 1
        state.last_extend_time = self._clock()

        if heat is SessionHeat.HOT:
            state.consecutive_hot_extensions += 1
        else:
            state.consecutive_hot_extensions = 0

        if heat is SessionHeat.COOL:
            state.cool_extension_count += 1
        else:
            state.cool_extension_count = 0

        state.last_heat = heat
        logger.debug(
            f"Recorded {heat.value.upper()} extension of {format_minutes(duration)} "
            f"(total={state.total_extensions}, hot_streak={state.consecutive_hot_extensions}, "
            f"cool_count={state.cool_extension_count})"
        )

    def reset_session(self) -> None:
        """Start a new session on this strategy instance."""
        self.state = ExtensionStrategyState(session_start_time=self._clock())
        logger.info("Extension strategy reset for new session")

    def get_metrics(self, current_heat: SessionHeat, activity_scores: ActivityScores) -> ExtensionMetrics:
        now = self._clock()
        state = self.state
        session_age = now - state.session_start_time
        return ExtensionMetrics(
            session_start_time=state.session_start_time,
            session_age=session_age,
            total_extensions=state.total_extensions,
            extensions_by_heat=dict(state.extensions_by_heat),
            consecutive_hot_extensions=state.consecutive_hot_extensions,
            cool_extension_count=state.cool_extension_count,
            last_extend_time=state.last_extend_time,
            current_heat=SessionHeat(current_heat),
            activity_scores=activity_scores,
            time_used=session_age,
            time_remaining=max(0.0, self.config.max_session_lifetime - session_age),
        )
