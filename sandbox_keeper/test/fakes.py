"""Deterministic stand-ins for the clock, executor, timers and governed resource."""

from concurrent.futures import Executor, Future

from sandbox_keeper.timeout_manager import ResourceStatus


class FakeClock:
    def __init__(self, start_ms: float = 1_700_000_000_000.0):
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class InlineExecutor(Executor):
    """Runs submitted work immediately on the caller's thread."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class ManualTimer:
    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.started and not self.cancelled:
            self.function()


class ManualTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function):
        timer = ManualTimer(interval, function)
        self.timers.append(timer)
        return timer

    @property
    def last(self):
        return self.timers[-1] if self.timers else None


class FakeResource:
    def __init__(self, timeout_remaining=600_000, status=ResourceStatus.CONNECTED):
        self.timeout_remaining = timeout_remaining
        self.status = status
        self.unsubscribe_calls = 0
        self._callbacks = []

    def on_status_change(self, callback):
        self._callbacks.append(callback)

        def _unsubscribe():
            self.unsubscribe_calls += 1
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def set_status(self, status):
        self.status = status
        for callback in list(self._callbacks):
            callback(status)
