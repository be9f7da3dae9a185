import asyncio
import threading

import pytest

from sandbox_keeper.errors import TimeoutManagerDisposedError
from sandbox_keeper.extension import ActivityType, AdaptiveExtensionConfig, SessionHeat
from sandbox_keeper.test.fakes import FakeClock, FakeResource, InlineExecutor, ManualTimerFactory
from sandbox_keeper.timeout_manager import (
    ResourceStatus,
    TimeoutManager,
    TimeoutSettings,
    get_global_timeout_manager,
    reset_global_timeout_manager,
)

MINUTE = 60 * 1000


class _Events:
    def __init__(self):
        self.warnings = []
        self.timeouts = 0
        self.extended = []
        self.failing = set()

    def on_warning(self, remaining):
        self.warnings.append(remaining)
        if "warning" in self.failing:
            raise RuntimeError("warning dialog crashed")

    def on_timeout(self):
        self.timeouts += 1
        if "timeout" in self.failing:
            raise RuntimeError("timeout handler crashed")

    def on_extended(self, duration_ms):
        self.extended.append(duration_ms)
        if "extended" in self.failing:
            raise RuntimeError("extended handler crashed")


class _Host:
    """Stand-in for the platform's extend endpoint."""

    def __init__(self, resource=None, result=True):
        self.resource = resource
        self.result = result
        self.calls = []

    def __call__(self, duration_ms):
        self.calls.append(duration_ms)
        if isinstance(self.result, Exception):
            raise self.result
        if self.result and self.resource is not None:
            self.resource.timeout_remaining += duration_ms
        return self.result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return ManualTimerFactory()


@pytest.fixture
def make_manager(clock, timers):
    created = []

    def _make(request_extend=None, extension_config=None, loop=None, **settings):
        events = _Events()
        # Poll thread never ticks on its own; tests drive check_timeout directly
        settings.setdefault("check_interval_ms", 3_600_000)
        manager = TimeoutManager(
            on_warning=events.on_warning,
            on_timeout=events.on_timeout,
            on_extended=events.on_extended,
            request_extend=request_extend,
            settings=TimeoutSettings(**settings),
            extension_config=extension_config or AdaptiveExtensionConfig(),
            clock=clock,
            executor=InlineExecutor(),
            timer_factory=timers,
            session_id="test",
            loop=loop,
        )
        created.append(manager)
        return manager, events

    yield _make

    for manager in created:
        manager.dispose()


def _record(manager, count, activity_type=ActivityType.USER_INTERACTION):
    for _ in range(count):
        manager.record_activity(activity_type)


# ---------------------------------------------------------------------
# Warning / expiry
# ---------------------------------------------------------------------

def test_warning_then_expiry_fires_timeout_once(make_manager, clock, timers):
    manager, events = make_manager()
    resource = FakeResource(timeout_remaining=60_000)

    manager.start(resource)

    assert events.warnings == [60_000]
    assert manager.get_state().warning_shown is True
    assert timers.last.interval == 120.0
    assert timers.last.daemon is True

    resource.timeout_remaining = 0
    clock.advance(60_000)
    manager.check_timeout()

    state = manager.get_state()
    assert state.is_expired is True
    assert events.timeouts == 1
    assert manager.is_running is False
    assert timers.last.cancelled is True

    manager.check_timeout()
    manager.record_activity(ActivityType.USER_INTERACTION)

    assert events.timeouts == 1
    assert manager.activity_tracker.get_total_activities() == 0


def test_warning_fires_once_until_reset(make_manager, clock, timers):
    manager, events = make_manager()
    resource = FakeResource(timeout_remaining=100_000)
    manager.start(resource)

    clock.advance(30_000)
    resource.timeout_remaining = 70_000
    manager.check_timeout()
    assert events.warnings == [100_000]

    timers.last.fire()
    assert manager.get_state().warning_shown is False

    # Flag is clear but the last warning is still too recent
    manager.check_timeout()
    assert events.warnings == [100_000]

    clock.advance(90_001)
    resource.timeout_remaining = 10_000
    manager.check_timeout()

    assert events.warnings == [100_000, 10_000]
    assert len(timers.timers) == 2


def test_no_warning_above_threshold(make_manager, timers):
    manager, events = make_manager()

    manager.start(FakeResource(timeout_remaining=10 * MINUTE))

    assert events.warnings == []
    assert timers.timers == []
    assert manager.get_state().time_remaining_ms == 10 * MINUTE


def test_resource_without_timeout_support_is_a_noop(make_manager):
    manager, events = make_manager()

    manager.start(FakeResource(timeout_remaining=None))
    manager.check_timeout()

    state = manager.get_state()
    assert state.is_expired is False
    assert state.time_remaining_ms == 0
    assert events.warnings == []
    assert events.timeouts == 0


def test_raising_timeout_handler_still_expires_once(make_manager):
    manager, events = make_manager()
    events.failing.add("timeout")
    resource = FakeResource(timeout_remaining=5 * MINUTE)
    manager.start(resource)

    resource.timeout_remaining = 0
    manager.check_timeout()
    manager.check_timeout()

    assert events.timeouts == 1
    assert manager.get_state().is_expired is True
    assert manager.is_running is False


def test_raising_warning_handler_keeps_reset_timer_armed(make_manager, timers):
    manager, events = make_manager()
    events.failing.add("warning")
    resource = FakeResource(timeout_remaining=100_000)

    manager.start(resource)

    assert events.warnings == [100_000]
    assert manager.get_state().warning_shown is True
    assert timers.last.started is True
    assert timers.last.cancelled is False

    # Polling carries on to expiry
    resource.timeout_remaining = 0
    manager.check_timeout()
    assert events.timeouts == 1


def test_raising_extended_handler_keeps_grant(make_manager):
    manager, events = make_manager(request_extend=_Host())
    events.failing.add("extended")
    manager.start(FakeResource(timeout_remaining=5 * MINUTE))

    assert manager.request_extension(60_000) is True
    assert events.extended == [60_000]
    assert manager.get_state().time_remaining_ms == 6 * MINUTE


# ---------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------

def test_start_after_dispose_raises(make_manager):
    manager, _ = make_manager()
    manager.dispose()

    with pytest.raises(TimeoutManagerDisposedError):
        manager.start(FakeResource())


@pytest.mark.parametrize("status", [ResourceStatus.DISCONNECTED, ResourceStatus.ERROR, "error"])
def test_terminal_status_stops_without_timeout(make_manager, status):
    manager, events = make_manager()
    resource = FakeResource()
    manager.start(resource)

    resource.set_status(ResourceStatus.CONNECTING)
    assert manager.is_running is True

    resource.set_status(status)

    assert manager.is_running is False
    assert resource.unsubscribe_calls == 1
    assert events.timeouts == 0
    assert manager.get_state().is_expired is False


def test_restart_detaches_previous_resource(make_manager):
    manager, _ = make_manager()
    first = FakeResource(timeout_remaining=5 * MINUTE)
    second = FakeResource(timeout_remaining=8 * MINUTE)

    manager.start(first)
    manager.start(second)

    assert first.unsubscribe_calls == 1
    assert manager.is_running is True
    assert manager.get_state().total_timeout_ms == 8 * MINUTE


def test_stop_is_idempotent(make_manager):
    manager, _ = make_manager()
    manager.start(FakeResource())

    manager.stop()
    manager.stop()

    assert manager.is_running is False
    assert manager.is_disposed is False


def test_dispose_is_terminal(make_manager):
    manager, events = make_manager()
    snapshots = []
    manager.on_state_change(snapshots.append)
    manager.start(FakeResource(timeout_remaining=5 * MINUTE))
    _record(manager, 2)

    manager.dispose()
    manager.dispose()

    assert manager.is_disposed is True
    assert manager.is_running is False
    assert manager.get_recent_activity_count() == 0
    assert manager.activity_tracker.get_total_activities() == 0
    assert manager.request_extension(60_000) is False

    seen = len(snapshots)
    _record(manager, 1)
    manager.check_timeout()
    assert len(snapshots) == seen


@pytest.mark.parametrize("operation", ["pause_auto_extend", "resume_auto_extend", "reset_session"])
def test_controls_on_disposed_manager_raise(make_manager, operation):
    manager, _ = make_manager()
    manager.dispose()

    with pytest.raises(TimeoutManagerDisposedError):
        getattr(manager, operation)()

    assert manager.get_state().auto_extend_paused is False


def test_extension_on_disposed_manager_is_refused_with_warning(make_manager, monkeypatch):
    host = _Host()
    manager, _ = make_manager(request_extend=host)
    manager.dispose()
    warnings = []
    monkeypatch.setattr(manager.logger, "warning", lambda msg, *args, **kwargs: warnings.append(msg))

    assert manager.request_extension(60_000) is False
    assert asyncio.run(manager.request_extension_async(60_000)) is False
    assert host.calls == []
    assert len(warnings) == 2
    assert all("disposed" in message for message in warnings)


# ---------------------------------------------------------------------
# Auto-extension
# ---------------------------------------------------------------------

def test_light_activity_under_trigger_extends_as_cool(make_manager):
    resource = FakeResource(timeout_remaining=3 * MINUTE)
    host = _Host(resource)
    manager, events = make_manager(request_extend=host)
    manager.start(resource)

    manager.record_activity(ActivityType.USER_INTERACTION)
    assert host.calls == []

    manager.record_activity(ActivityType.USER_INTERACTION)

    assert host.calls == [180_000]
    assert events.extended == [180_000]
    state = manager.get_state()
    assert state.time_remaining_ms == 360_000
    assert state.total_timeout_ms == 360_000
    assert manager.strategy.state.extensions_by_heat[SessionHeat.COOL] == 1


def test_hot_session_extends_once_under_trigger(make_manager):
    resource = FakeResource(timeout_remaining=10 * MINUTE)
    host = _Host(resource)
    manager, events = make_manager(request_extend=host)
    manager.start(resource)

    _record(manager, 30)
    assert host.calls == []

    resource.timeout_remaining = 3 * MINUTE
    manager.check_timeout()
    manager.record_activity(ActivityType.USER_INTERACTION)

    assert host.calls == [600_000]
    state = manager.get_state()
    assert state.time_remaining_ms == 780_000
    assert state.total_timeout_ms == 1_200_000
    assert manager.strategy.state.consecutive_hot_extensions == 1

    # Back above the trigger: no further requests
    _record(manager, 5)
    assert host.calls == [600_000]


def test_settle_window_skips_stale_resource_reads(make_manager, clock):
    resource = FakeResource(timeout_remaining=5 * MINUTE)
    manager, _ = make_manager(request_extend=_Host())
    manager.start(resource)

    assert manager.request_extension(60_000) is True
    manager.check_timeout()
    assert manager.get_state().time_remaining_ms == 360_000

    clock.advance(1_999)
    manager.check_timeout()
    assert manager.get_state().time_remaining_ms == 360_000

    clock.advance(2)
    manager.check_timeout()
    assert manager.get_state().time_remaining_ms == 5 * MINUTE


@pytest.mark.parametrize("result", [False, RuntimeError("extend endpoint unavailable")])
def test_failed_extension_leaves_state_and_allows_retry(make_manager, result):
    resource = FakeResource(timeout_remaining=3 * MINUTE)
    host = _Host(resource, result=result)
    manager, events = make_manager(request_extend=host)
    manager.start(resource)

    _record(manager, 2)

    assert host.calls == [180_000]
    assert events.extended == []
    assert manager.get_state().time_remaining_ms == 180_000
    assert manager.strategy.state.total_extensions == 0

    host.result = True
    manager.record_activity(ActivityType.USER_INTERACTION)

    assert host.calls == [180_000, 180_000]
    assert manager.strategy.state.total_extensions == 1


def test_pause_and_resume_auto_extend(make_manager):
    resource = FakeResource(timeout_remaining=3 * MINUTE)
    host = _Host(resource)
    manager, _ = make_manager(request_extend=host)
    manager.start(resource)

    manager.pause_auto_extend()
    _record(manager, 2)

    assert manager.get_state().auto_extend_paused is True
    assert host.calls == []

    manager.resume_auto_extend()
    manager.record_activity(ActivityType.USER_INTERACTION)

    assert manager.get_state().auto_extend_paused is False
    assert host.calls == [180_000]


def test_auto_extend_disabled(make_manager):
    resource = FakeResource(timeout_remaining=3 * MINUTE)
    host = _Host(resource)
    manager, _ = make_manager(request_extend=host, auto_extend=False)
    manager.start(resource)

    _record(manager, 30)

    assert host.calls == []


def test_async_extend_callback(make_manager):
    calls = []

    async def request_extend(duration_ms):
        calls.append(duration_ms)
        return True

    manager, events = make_manager(request_extend=request_extend)
    manager.start(FakeResource(timeout_remaining=3 * MINUTE))

    _record(manager, 2)

    assert calls == [180_000]
    assert events.extended == [180_000]
    assert manager.get_state().time_remaining_ms == 360_000


def test_min_auto_extend_interval(make_manager, clock):
    resource = FakeResource(timeout_remaining=3 * MINUTE)
    host = _Host()
    manager, _ = make_manager(
        request_extend=host,
        extension_config=AdaptiveExtensionConfig(min_extend_interval=0),
    )
    manager.start(resource)

    _record(manager, 2)
    assert host.calls == [180_000]

    clock.advance(2_001)
    manager.check_timeout()
    assert manager.get_state().time_remaining_ms == 180_000

    manager.record_activity(ActivityType.USER_INTERACTION)
    assert host.calls == [180_000]

    clock.advance(60_000)
    manager.record_activity(ActivityType.USER_INTERACTION)
    assert host.calls == [180_000, 180_000]


def test_dispose_during_extension_leaves_strategy_untouched(make_manager):
    holder = {}

    def request_extend(duration_ms):
        holder["manager"].dispose()
        return True

    manager, events = make_manager(request_extend=request_extend)
    holder["manager"] = manager
    manager.start(FakeResource(timeout_remaining=3 * MINUTE))

    _record(manager, 2)

    assert manager.is_disposed is True
    assert manager.strategy.state.total_extensions == 0
    assert events.extended == []


def test_reset_session_clears_activity_and_counters(make_manager):
    resource = FakeResource(timeout_remaining=3 * MINUTE)
    manager, _ = make_manager(request_extend=_Host(resource))
    manager.start(resource)
    _record(manager, 2)
    assert manager.strategy.state.total_extensions == 1

    manager.reset_session()

    assert manager.strategy.state.total_extensions == 0
    assert manager.activity_tracker.get_total_activities() == 0


def test_activity_without_attached_resource_never_extends(make_manager):
    resource = FakeResource(timeout_remaining=3 * MINUTE)
    host = _Host()
    manager, _ = make_manager(request_extend=host)

    _record(manager, 30)
    assert host.calls == []

    manager.start(resource)
    resource.set_status(ResourceStatus.DISCONNECTED)
    _record(manager, 30)
    assert host.calls == []

    manager.start(resource)
    manager.record_activity(ActivityType.USER_INTERACTION)
    assert host.calls == [600_000]


# ---------------------------------------------------------------------
# Manual extension
# ---------------------------------------------------------------------

def test_manual_extension_clears_warning(make_manager, clock, timers):
    resource = FakeResource(timeout_remaining=100_000)
    manager, events = make_manager(request_extend=_Host())
    manager.start(resource)
    assert events.warnings == [100_000]

    assert manager.request_extension(60_000) is True

    state = manager.get_state()
    assert state.warning_shown is False
    assert state.time_remaining_ms == 160_000
    assert state.total_timeout_ms == 160_000
    assert timers.last.cancelled is True
    assert events.extended == [60_000]
    assert manager.strategy.state.total_extensions == 0

    clock.advance(2_001)
    manager.check_timeout()
    assert events.warnings == [100_000, 100_000]


def test_manual_extension_without_callback_fails(make_manager):
    manager, events = make_manager()
    manager.start(FakeResource())

    assert manager.request_extension(60_000) is False
    assert events.extended == []


# ---------------------------------------------------------------------
# Async hosts
# ---------------------------------------------------------------------

def test_manual_extension_from_inside_running_loop(make_manager):
    calls = []

    async def request_extend(duration_ms):
        await asyncio.sleep(0)
        calls.append(duration_ms)
        return True

    manager, events = make_manager(request_extend=request_extend)
    manager.start(FakeResource(timeout_remaining=5 * MINUTE))

    async def host():
        # Cannot block on the loop thread, so a task is handed back
        pending = manager.request_extension(300_000)
        assert isinstance(pending, asyncio.Task)
        return await pending

    assert asyncio.run(host()) is True
    assert calls == [300_000]
    assert events.extended == [300_000]
    assert manager.get_state().time_remaining_ms == 10 * MINUTE


def test_request_extension_async_awaits_on_caller_loop(make_manager):
    loops = []

    async def request_extend(duration_ms):
        loops.append(asyncio.get_running_loop())
        return True

    manager, events = make_manager(request_extend=request_extend)
    manager.start(FakeResource(timeout_remaining=5 * MINUTE))

    async def host():
        ok = await manager.request_extension_async(60_000)
        return ok, asyncio.get_running_loop()

    ok, host_loop = asyncio.run(host())

    assert ok is True
    assert loops == [host_loop]
    assert events.extended == [60_000]


def test_request_extension_async_with_sync_callback(make_manager):
    host = _Host()
    manager, events = make_manager(request_extend=host)
    manager.start(FakeResource(timeout_remaining=5 * MINUTE))

    assert asyncio.run(manager.request_extension_async(60_000)) is True
    assert host.calls == [60_000]
    assert events.extended == [60_000]


def test_auto_extension_inside_running_loop(make_manager):
    calls = []

    async def request_extend(duration_ms):
        calls.append(duration_ms)
        return True

    manager, events = make_manager(request_extend=request_extend)

    async def host():
        manager.start(FakeResource(timeout_remaining=3 * MINUTE))
        _record(manager, 2)
        pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        await asyncio.gather(*pending)
        await asyncio.sleep(0)

    asyncio.run(host())

    assert calls == [180_000]
    assert events.extended == [180_000]
    assert manager.strategy.state.extensions_by_heat[SessionHeat.COOL] == 1


def test_blocking_caller_awaits_callback_on_host_loop(make_manager):
    host_loop = asyncio.new_event_loop()
    running = threading.Event()
    host_loop.call_soon(running.set)
    loop_thread = threading.Thread(target=host_loop.run_forever, daemon=True)
    loop_thread.start()
    seen = []

    async def request_extend(duration_ms):
        seen.append(asyncio.get_running_loop())
        return True

    try:
        assert running.wait(timeout=5)
        manager, events = make_manager(request_extend=request_extend, loop=host_loop)
        manager.start(FakeResource(timeout_remaining=5 * MINUTE))

        assert manager.request_extension(60_000) is True
    finally:
        host_loop.call_soon_threadsafe(host_loop.stop)
        loop_thread.join(timeout=5)
        host_loop.close()

    assert seen == [host_loop]
    assert events.extended == [60_000]


# ---------------------------------------------------------------------
# Activity log & subscribers
# ---------------------------------------------------------------------

def test_legacy_activity_types_are_logged_not_scored(make_manager):
    manager, _ = make_manager()

    manager.record_activity("file_write")
    manager.record_activity("command")
    assert manager.get_recent_activity_count() == 2
    assert manager.activity_tracker.get_total_activities() == 0

    manager.record_activity(ActivityType.PREVIEW_ACCESS)
    assert manager.get_recent_activity_count() == 3
    assert manager.activity_tracker.get_total_activities() == 1


def test_legacy_activity_log_is_capped(make_manager):
    manager, _ = make_manager()

    _record(manager, 120, "command")

    assert manager.get_recent_activity_count() == 100


def test_unknown_activity_type_rejected(make_manager):
    manager, _ = make_manager()

    with pytest.raises(ValueError):
        manager.record_activity("scroll")


def test_state_subscribers_get_copies(make_manager):
    manager, _ = make_manager()
    snapshots = []

    def _broken(state):
        raise RuntimeError("subscriber bug")

    manager.on_state_change(_broken)
    unsubscribe = manager.on_state_change(snapshots.append)
    manager.start(FakeResource(timeout_remaining=100_000))

    assert snapshots[-1].warning_shown is True
    assert snapshots[-1].time_remaining_ms == 100_000

    snapshots[-1].time_remaining_ms = 0
    assert manager.get_state().time_remaining_ms == 100_000

    unsubscribe()
    seen = len(snapshots)
    manager.check_timeout()
    assert len(snapshots) == seen


# ---------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------

def test_global_manager_get_and_reset():
    reset_global_timeout_manager()
    kwargs = dict(
        on_warning=lambda remaining: None,
        on_timeout=lambda: None,
        on_extended=lambda duration: None,
        settings=TimeoutSettings(check_interval_ms=3_600_000),
        extension_config=AdaptiveExtensionConfig(),
        executor=InlineExecutor(),
    )
    try:
        first = get_global_timeout_manager(**kwargs)
        assert get_global_timeout_manager() is first

        reset_global_timeout_manager()
        assert first.is_disposed is True

        second = get_global_timeout_manager(**kwargs)
        assert second is not first
    finally:
        reset_global_timeout_manager()
