# timeout_manager.py
"""
Timeout Manager - governs one sandbox session's remaining lifetime.

State machine: idle -> started -> (polling)* -> stopped | expired.
dispose() is terminal: a disposed manager refuses to start, pause, resume or
reset, and refuses extension requests with a logged warning.

Each poll tick:
- skips entirely inside the settle window after a granted extension
  (the resource may still report the pre-extension remaining time)
- reads the resource's remaining time; <= 0 expires the session exactly once
- fires a warning when remaining time drops under the warning threshold;
  a one-shot timer re-arms the warning after the threshold period

Activity is forwarded to the ActivityTracker and may trigger an
auto-extension through the AdaptiveExtensionStrategy. Extension requests run
on a worker thread so record_activity never blocks; a failed or rejected
request is logged and leaves the strategy counters untouched.

Threads: one PollTask thread, one-shot Timer threads, one extension worker.
All state lives behind a single RLock; host callbacks fire outside it.
Async extend callbacks are awaited on the host event loop when one is known.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import threading
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sandbox_keeper.errors import ExtensionConfigError, TimeoutManagerDisposedError
from sandbox_keeper.extension.activity_tracker import ActivityTracker
from sandbox_keeper.extension.adaptive_extension import AdaptiveExtensionStrategy
from sandbox_keeper.extension.extension_config import (
    ActivityType,
    AdaptiveExtensionConfig,
    SessionHeat,
    load_extension_config,
    read_yaml_layer,
)
from sandbox_keeper.timeout_manager.poll_task import PollTask
from sandbox_keeper.utils.config_loader import deep_merge
from sandbox_keeper.utils.logging_config import SessionLoggerAdapter, get_logger, log_standout_text
from sandbox_keeper.utils.time_utils import Clock, format_minutes, now_ms

_base_logger = get_logger(__name__)

LEGACY_ACTIVITY_TYPES = frozenset({"file_write", "command"})
MAX_LEGACY_ACTIVITIES = 100


# ---------------------------------------------------------------------
# External interfaces
# ---------------------------------------------------------------------

class ResourceStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({ResourceStatus.DISCONNECTED, ResourceStatus.ERROR})


class SandboxResource(Protocol):
    """The governed resource, as seen by the timeout manager."""

    status: ResourceStatus
    # None means the resource type does not support timeouts
    timeout_remaining: Optional[int]

    def on_status_change(self, callback: Callable[[ResourceStatus], None]) -> Callable[[], None]:
        ...


RequestExtend = Callable[[int], Union[bool, Awaitable[bool]]]
TimerFactory = Callable[[float, Callable[[], None]], Any]


# ---------------------------------------------------------------------
# Settings & state
# ---------------------------------------------------------------------

class TimeoutSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    warning_threshold_ms: int = Field(2 * 60 * 1000, ge=0)
    check_interval_ms: int = Field(30 * 1000, ge=1)
    auto_extend: bool = True
    min_auto_extend_interval_ms: int = Field(60 * 1000, ge=0)
    # Grace period after a granted extension during which resource reads are skipped
    extension_settle_ms: int = Field(2000, ge=0)


def load_timeout_settings(
    overrides: Optional[Dict[str, Any]] = None,
    config_path: Optional[Union[str, Path]] = None,
) -> TimeoutSettings:
    """Build validated TimeoutSettings from defaults < YAML `timeout_manager` section < overrides."""
    merged = deep_merge(read_yaml_layer("timeout_manager", config_path), overrides or {})
    try:
        return TimeoutSettings.model_validate(merged)
    except ValidationError as e:
        raise ExtensionConfigError(f"Invalid timeout manager settings: {e}") from e


@dataclass
class TimeoutState:
    time_remaining_ms: float = 0
    total_timeout_ms: float = 0
    warning_shown: bool = False
    last_activity_at: float = 0
    is_expired: bool = False
    auto_extend_paused: bool = False


@dataclass(frozen=True)
class LegacyActivityRecord:
    timestamp_ms: float
    activity_type: str


async def _await_result(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    """The event loop running on the calling thread, if any."""
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class TimeoutManager:
    """
    Handles sandbox session timeout tracking and adaptive extension.

    Features:
    - Tracks time remaining via the resource's own report
    - Warns before timeout, re-arming while time keeps draining
    - Auto-extends on activity through the adaptive strategy
    - Reports expiry exactly once
    """

    def __init__(
        self,
        on_warning: Callable[[float], None],
        on_timeout: Callable[[], None],
        on_extended: Callable[[int], None],
        request_extend: Optional[RequestExtend] = None,
        settings: Optional[Union[TimeoutSettings, Dict[str, Any]]] = None,
        extension_config: Optional[Union[AdaptiveExtensionConfig, Dict[str, Any]]] = None,
        clock: Optional[Clock] = None,
        executor: Optional[Executor] = None,
        timer_factory: Optional[TimerFactory] = None,
        session_id: Optional[str] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._on_warning = on_warning
        self._on_timeout = on_timeout
        self._on_extended = on_extended
        self._request_extend = request_extend

        if isinstance(settings, TimeoutSettings):
            self.settings = settings
        else:
            self.settings = load_timeout_settings(overrides=settings)

        if isinstance(extension_config, AdaptiveExtensionConfig):
            self.extension_config = extension_config
        else:
            self.extension_config = load_extension_config(overrides=extension_config)

        self._clock = clock or now_ms
        self._timer_factory = timer_factory or threading.Timer
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="sandbox-extend")
        # Loop that async extend callbacks belong to; captured at start() unless given
        self._host_loop = loop
        self._host_loop_pinned = loop is not None

        self.session_id = session_id or uuid.uuid4().hex[:8]
        self.logger = SessionLoggerAdapter(_base_logger, self.session_id)

        self._lock = threading.RLock()
        self._state = TimeoutState(last_activity_at=self._clock())
        self._resource: Optional[SandboxResource] = None
        self._unsubscribe_resource: Optional[Callable[[], None]] = None
        self._poll_task: Optional[PollTask] = None
        self._warning_reset_timer: Optional[Any] = None
        self._state_callbacks: Set[Callable[[TimeoutState], None]] = set()
        self._activities: List[LegacyActivityRecord] = []

        self._last_extend_at: Optional[float] = None
        self._last_auto_extend_at: Optional[float] = None
        self._last_warning_at: Optional[float] = None
        self._extension_in_flight = False
        self._is_disposed = False

        self._activity_tracker = ActivityTracker(self.extension_config, clock=self._clock)
        self._strategy = AdaptiveExtensionStrategy(self.extension_config, clock=self._clock)

        durations = self.extension_config.extension_durations
        self.logger.info(
            f"TimeoutManager initialized with adaptive extension "
            f"(hot={format_minutes(durations.hot)}, warm={format_minutes(durations.warm)}, "
            f"cool={format_minutes(durations.cool)}, "
            f"max_lifetime={format_minutes(self.extension_config.max_session_lifetime)})"
        )

    # ---------------------------------------------------------------------
    # Accessors
    # ---------------------------------------------------------------------

    @property
    def activity_tracker(self) -> ActivityTracker:
        return self._activity_tracker

    @property
    def strategy(self) -> AdaptiveExtensionStrategy:
        return self._strategy

    @property
    def is_disposed(self) -> bool:
        return self._is_disposed

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._resource is not None and self._poll_task is not None

    def get_state(self) -> TimeoutState:
        with self._lock:
            return dataclasses.replace(self._state)

    def on_state_change(self, callback: Callable[[TimeoutState], None]) -> Callable[[], None]:
        """Subscribe to state snapshots; returns an unsubscribe function."""
        with self._lock:
            self._state_callbacks.add(callback)

        def _unsubscribe() -> None:
            with self._lock:
                self._state_callbacks.discard(callback)

        return _unsubscribe

    def get_recent_activity_count(self, duration_ms: float = 60_000) -> int:
        with self._lock:
            cutoff = self._clock() - duration_ms
            return sum(1 for a in self._activities if a.timestamp_ms > cutoff)

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    def start(self, resource: SandboxResource) -> None:
        """Start monitoring a resource's timeout."""
        with self._lock:
            self._ensure_not_disposed_locked()
            previous_task = self._detach_locked()

        if previous_task is not None:
            previous_task.stop()

        with self._lock:
            self._ensure_not_disposed_locked()
            self._resource = resource
            self._state.last_activity_at = self._clock()
            if not self._host_loop_pinned:
                self._host_loop = _running_loop() or self._host_loop

            timeout_remaining = resource.timeout_remaining
            if timeout_remaining is not None:
                self._state.time_remaining_ms = timeout_remaining
                self._state.total_timeout_ms = timeout_remaining

            try:
                self._unsubscribe_resource = resource.on_status_change(self._handle_status_change)
            except Exception:
                self._unsubscribe_resource = None
                self.logger.exception("Could not subscribe to resource status changes")

            self._poll_task = PollTask(
                name=f"sandbox-timeout-{self.session_id}",
                func=self.check_timeout,
                interval_seconds=self.settings.check_interval_ms / 1000.0,
            )
            poll_task = self._poll_task

            self.logger.info(
                f"TimeoutManager started (time_remaining={self._state.time_remaining_ms}ms, "
                f"warning_threshold={self.settings.warning_threshold_ms}ms)"
            )

        poll_task.start()
        self.check_timeout()

    def stop(self) -> None:
        """Stop monitoring. Idempotent."""
        with self._lock:
            poll_task = self._detach_locked()

        if poll_task is not None:
            poll_task.stop()
        self.logger.info("TimeoutManager stopped")

    def dispose(self) -> None:
        """Stop and mark the manager unusable. Cannot be restarted."""
        self.stop()
        with self._lock:
            self._is_disposed = True
            self._activities = []
            self._activity_tracker.clear()
            self._state_callbacks.clear()

        if self._owns_executor:
            # In-flight requests may still resolve; their handlers see is_disposed
            self._executor.shutdown(wait=False)
        self.logger.info("TimeoutManager disposed")

    def reset_session(self) -> None:
        """Begin a new session on the same manager: fresh activity log and strategy counters."""
        with self._lock:
            self._ensure_not_disposed_locked()
            self._activity_tracker.clear()
            self._strategy.reset_session()
            self._last_auto_extend_at = None
        self.logger.info("Session reset")

    def _ensure_not_disposed_locked(self) -> None:
        if self._is_disposed:
            raise TimeoutManagerDisposedError()

    def _detach_locked(self) -> Optional[PollTask]:
        """Cancel timers and drop the resource; returns the poll task for the caller to stop unlocked."""
        poll_task = self._poll_task
        self._poll_task = None

        self._cancel_warning_reset_locked()

        if self._unsubscribe_resource is not None:
            try:
                self._unsubscribe_resource()
            except Exception:
                self.logger.exception("Resource unsubscribe failed")
            self._unsubscribe_resource = None

        self._resource = None
        return poll_task

    def _handle_status_change(self, status: Any) -> None:
        try:
            status = ResourceStatus(status)
        except ValueError:
            self.logger.debug(f"Ignoring unknown resource status {status!r}")
            return

        if status in TERMINAL_STATUSES:
            self.logger.info(f"Resource reported terminal status '{status.value}', stopping")
            self.stop()

    # ---------------------------------------------------------------------
    # Poll tick
    # ---------------------------------------------------------------------

    def check_timeout(self) -> None:
        """One poll tick. Safe to call directly; a no-op once expired or stopped."""
        expired = False
        warning_remaining: Optional[float] = None
        poll_task: Optional[PollTask] = None

        with self._lock:
            resource = self._resource
            if resource is None or self._state.is_expired or self._is_disposed:
                return

            now = self._clock()
            if self._last_extend_at is not None:
                since_extend = now - self._last_extend_at
                if since_extend < self.settings.extension_settle_ms:
                    self.logger.debug(f"Skipping resource sync - recently extended ({since_extend:.0f}ms ago)")
                    return

            try:
                timeout_remaining = resource.timeout_remaining
            except Exception:
                self.logger.exception("Could not read remaining time from resource")
                return

            if timeout_remaining is None:
                return

            self._state.time_remaining_ms = timeout_remaining

            if timeout_remaining <= 0:
                self._state.is_expired = True
                poll_task = self._detach_locked()
                expired = True
            elif (
                timeout_remaining <= self.settings.warning_threshold_ms
                and not self._state.warning_shown
                and (
                    self._last_warning_at is None
                    or now - self._last_warning_at > self.settings.warning_threshold_ms
                )
            ):
                self._state.warning_shown = True
                self._last_warning_at = now
                self._arm_warning_reset_locked()
                warning_remaining = timeout_remaining

            snapshot = dataclasses.replace(self._state)

        if expired:
            if poll_task is not None:
                poll_task.stop()
            log_standout_text(self.logger, "Sandbox session expired", title="[EXPIRED]")
            self._safe_call("on_timeout", self._on_timeout)
        elif warning_remaining is not None:
            self.logger.lifecycle(f"[WARNING] {format_minutes(warning_remaining)} remaining")
            self._safe_call("on_warning", self._on_warning, warning_remaining)

        self._notify_state_change(snapshot)

    def _arm_warning_reset_locked(self) -> None:
        self._cancel_warning_reset_locked()
        timer = self._timer_factory(self.settings.warning_threshold_ms / 1000.0, self._reset_warning_flag)
        timer.daemon = True
        self._warning_reset_timer = timer
        timer.start()

    def _cancel_warning_reset_locked(self) -> None:
        if self._warning_reset_timer is not None:
            self._warning_reset_timer.cancel()
            self._warning_reset_timer = None

    def _reset_warning_flag(self) -> None:
        with self._lock:
            if self._is_disposed:
                return
            self._state.warning_shown = False
            self._warning_reset_timer = None
            snapshot = dataclasses.replace(self._state)
        self._notify_state_change(snapshot)

    # ---------------------------------------------------------------------
    # Activity & auto-extension
    # ---------------------------------------------------------------------

    def record_activity(self, activity_type: Union[ActivityType, str]) -> None:
        """Record user activity; may trigger an auto-extension."""
        type_name = activity_type.value if isinstance(activity_type, ActivityType) else str(activity_type)
        is_tracked = type_name in {t.value for t in ActivityType}
        if not is_tracked and type_name not in LEGACY_ACTIVITY_TYPES:
            raise ValueError(f"Unknown activity type: {activity_type!r}")

        with self._lock:
            if self._is_disposed or self._state.is_expired:
                return

            now = self._clock()
            self._state.last_activity_at = now

            self._activities.append(LegacyActivityRecord(timestamp_ms=now, activity_type=type_name))
            if len(self._activities) > MAX_LEGACY_ACTIVITIES:
                self._activities = self._activities[-MAX_LEGACY_ACTIVITIES:]

            if is_tracked:
                self._activity_tracker.record_activity(type_name)

            self.logger.debug(
                f"Activity recorded: {type_name} (time_remaining={self._state.time_remaining_ms}ms)"
            )

        self._maybe_auto_extend()

    def pause_auto_extend(self) -> None:
        """Pause auto-extension (the user dismissed a warning)."""
        with self._lock:
            self._ensure_not_disposed_locked()
            self._state.auto_extend_paused = True
        self.logger.info("Auto-extension paused")

    def resume_auto_extend(self) -> None:
        with self._lock:
            self._ensure_not_disposed_locked()
            self._state.auto_extend_paused = False
        self.logger.info("Auto-extension resumed")

    def _maybe_auto_extend(self) -> None:
        with self._lock:
            if (
                self._is_disposed
                or self._resource is None
                or not self.settings.auto_extend
                or self._state.auto_extend_paused
                or self._request_extend is None
            ):
                return

            if self._extension_in_flight:
                self.logger.debug("Auto-extend skipped: a request is already in flight")
                return

            now = self._clock()
            if (
                self._last_auto_extend_at is not None
                and now - self._last_auto_extend_at < self.settings.min_auto_extend_interval_ms
            ):
                self.logger.debug("Auto-extend skipped: minimum auto-extend interval not elapsed")
                return

            decision = self._strategy.should_extend(self._state.time_remaining_ms, self._activity_tracker)
            if not decision.should_extend:
                self.logger.debug(f"Auto-extend skipped: {decision.reason}")
                return

            heat, duration = decision.heat, decision.duration
            if heat is None or not duration:
                self.logger.warning(f"Auto-extend approved but missing heat or duration: {decision}")
                return

            scores = self._activity_tracker.get_activity_scores()
            metrics = self._strategy.get_metrics(heat, scores)
            self.logger.info(
                f"[AUTO-EXTEND] {heat.value.upper()} for {format_minutes(duration)} "
                f"({decision.reason}); metrics={metrics.to_dict()}"
            )
            self._extension_in_flight = True

        try:
            self._executor.submit(self._run_auto_extension, heat, duration)
        except RuntimeError:
            with self._lock:
                self._extension_in_flight = False
            self.logger.warning("Auto-extend not submitted: extension worker is shut down")

    def _run_auto_extension(self, heat: SessionHeat, duration: int) -> None:
        try:
            outcome = self.request_extension(duration)
        except Exception:
            outcome = False
            self.logger.exception("Auto-extend failed")

        if isinstance(outcome, asyncio.Future):
            # Scheduled on the calling thread's loop; finish once the host answers
            outcome.add_done_callback(
                lambda task: self._complete_auto_extension(
                    heat, duration, not task.cancelled() and task.result()
                )
            )
            return
        self._complete_auto_extension(heat, duration, outcome)

    def _complete_auto_extension(self, heat: SessionHeat, duration: int, success: bool) -> None:
        with self._lock:
            self._extension_in_flight = False
            if self._is_disposed:
                self.logger.debug("Auto-extend completed after dispose; ignoring result")
                return

            if not success:
                # Counters stay untouched so a failed request cannot advance streaks
                self.logger.warning(f"Auto-extend request returned false ({heat.value}, {duration}ms)")
                return

            self._strategy.record_extension(heat, duration)
            now = self._clock()
            self._last_extend_at = now
            self._last_auto_extend_at = now
            self.logger.info(
                f"Extension successful ({heat.value}, {format_minutes(duration)}, "
                f"new time_remaining={format_minutes(self._state.time_remaining_ms)})"
            )

    # ---------------------------------------------------------------------
    # Manual extension
    # ---------------------------------------------------------------------

    def request_extension(self, duration_ms: int) -> Union[bool, "asyncio.Task[bool]"]:
        """
        Ask the host for more time. Never raises; failures return False.

        An awaitable returned by the extend callback is awaited on the host
        loop (the one running when start() was called, or the `loop` given to
        the constructor), or on a private loop when there is none. Called from
        a thread whose event loop is running, the request cannot block: it is
        scheduled on that loop and an asyncio.Task resolving to the result is
        returned. Async hosts should prefer `await request_extension_async()`.
        """
        request_extend = self._extension_callback(duration_ms)
        if request_extend is None:
            return False

        try:
            result = request_extend(duration_ms)
        except Exception:
            self.logger.error("Error requesting timeout extension", exc_info=True)
            return False

        if inspect.isawaitable(result):
            calling_loop = _running_loop()
            if calling_loop is not None:
                return calling_loop.create_task(self._finish_awaited_extension(result, duration_ms))
            try:
                result = self._resolve_off_loop(result)
            except Exception:
                self.logger.error("Error requesting timeout extension", exc_info=True)
                return False

        return self._apply_extension(duration_ms, result)

    async def request_extension_async(self, duration_ms: int) -> bool:
        """Awaitable form of request_extension() for callers running inside an event loop."""
        request_extend = self._extension_callback(duration_ms)
        if request_extend is None:
            return False

        try:
            result = request_extend(duration_ms)
        except Exception:
            self.logger.error("Error requesting timeout extension", exc_info=True)
            return False

        if inspect.isawaitable(result):
            return await self._finish_awaited_extension(result, duration_ms)
        return self._apply_extension(duration_ms, result)

    def _extension_callback(self, duration_ms: int) -> Optional[RequestExtend]:
        with self._lock:
            if self._is_disposed:
                self.logger.warning(f"Extension of {duration_ms}ms refused: TimeoutManager has been disposed")
                return None
            if self._request_extend is None:
                self.logger.warning(f"Extension of {duration_ms}ms refused: no extend callback configured")
                return None
            request_extend = self._request_extend

        self.logger.info(f"Requesting timeout extension of {duration_ms}ms")
        return request_extend

    def _resolve_off_loop(self, awaitable: Awaitable[Any]) -> Any:
        """Block until the awaitable resolves; only valid on a thread with no running loop."""
        host_loop = self._host_loop
        if host_loop is not None and host_loop.is_running() and not host_loop.is_closed():
            return asyncio.run_coroutine_threadsafe(_await_result(awaitable), host_loop).result()
        return asyncio.run(_await_result(awaitable))

    async def _finish_awaited_extension(self, awaitable: Awaitable[Any], duration_ms: int) -> bool:
        try:
            result = await awaitable
        except Exception:
            self.logger.error("Error requesting timeout extension", exc_info=True)
            return False
        return self._apply_extension(duration_ms, result)

    def _apply_extension(self, duration_ms: int, result: Any) -> bool:
        if not result:
            self.logger.warning("Timeout extension request failed")
            return False

        with self._lock:
            if self._is_disposed:
                self.logger.debug("Extension granted after dispose; state left unchanged")
                return True

            self._last_extend_at = self._clock()
            self._state.warning_shown = False
            self._last_warning_at = None
            self._cancel_warning_reset_locked()

            # Optimistic update; the settle window keeps the next tick from overwriting it
            self._state.time_remaining_ms += duration_ms
            self._state.total_timeout_ms += duration_ms
            snapshot = dataclasses.replace(self._state)

        self.logger.lifecycle(
            f"Timeout extended by {format_minutes(duration_ms)} "
            f"(time_remaining={snapshot.time_remaining_ms}ms)"
        )
        self._safe_call("on_extended", self._on_extended, duration_ms)
        self._notify_state_change(snapshot)
        return True

    # ---------------------------------------------------------------------
    # Callbacks
    # ---------------------------------------------------------------------

    def _safe_call(self, name: str, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            self.logger.exception(f"{name} callback failed")

    def _notify_state_change(self, snapshot: TimeoutState) -> None:
        with self._lock:
            callbacks = list(self._state_callbacks)
        for callback in callbacks:
            self._safe_call("state change", callback, dataclasses.replace(snapshot))


# ---------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------

_global_timeout_manager: Optional[TimeoutManager] = None
_global_lock = threading.Lock()


def get_global_timeout_manager(**kwargs: Any) -> TimeoutManager:
    """Get or create the process-wide TimeoutManager. kwargs are used only on creation."""
    global _global_timeout_manager
    with _global_lock:
        if _global_timeout_manager is None:
            _global_timeout_manager = TimeoutManager(**kwargs)
        return _global_timeout_manager


def reset_global_timeout_manager() -> None:
    """Dispose and forget the process-wide TimeoutManager."""
    global _global_timeout_manager
    with _global_lock:
        manager = _global_timeout_manager
        _global_timeout_manager = None
    if manager is not None:
        manager.dispose()
