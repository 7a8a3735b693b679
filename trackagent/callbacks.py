"""Wraps thread targets and timer functions as they are handed over."""

import contextlib
import logging
import threading

from trackagent.adapters import PatchAdapter
from trackagent.wrapper import FunctionWrapper

logger = logging.getLogger(__name__)

_local = threading.local()


@contextlib.contextmanager
def unwatched():
    """Threads and timers constructed inside this block (on this thread) keep their callables as given."""
    previous = getattr(_local, "unwatched", False)
    _local.unwatched = True
    try:
        yield
    finally:
        _local.unwatched = previous


def watching_suppressed() -> bool:
    return getattr(_local, "unwatched", False)


class CallbackWatcher:
    """Patches ``threading.Thread`` and ``threading.Timer`` so their callables are wrapped.

    Wrapping happens when the thread or timer is constructed, which is where
    a bind stack (if enabled) is captured. Scheduling is left untouched.
    The agent builds its own threads inside ``unwatched()``.
    """

    def __init__(self, wrapper: FunctionWrapper, thread_class=threading.Thread,
                 timer_class=threading.Timer):
        self._wrapper = wrapper
        self._thread = PatchAdapter(thread_class, "__init__")
        self._timer = PatchAdapter(timer_class, "__init__")

    def watch(self) -> bool:
        threads = self._thread.patch(self._wrap_thread_init)
        timers = self._timer.patch(self._wrap_timer_init)
        return threads and timers

    def restore(self):
        self._timer.restore()
        self._thread.restore()

    def _wrap_thread_init(self, original):
        wrap = self._wrapper.wrap

        def __init__(self, group=None, target=None, *args, **kwargs):
            if target is not None and not watching_suppressed():
                target = wrap(target)
            original(self, group, target, *args, **kwargs)

        return __init__

    def _wrap_timer_init(self, original):
        wrap = self._wrapper.wrap

        def __init__(self, interval, function, *args, **kwargs):
            if not watching_suppressed():
                function = wrap(function)
            original(self, interval, function, *args, **kwargs)

        return __init__
