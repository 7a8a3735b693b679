"""Watcher for uncaught exceptions and unhandled asyncio failures."""

import asyncio
import logging
import sys
import threading
from typing import Callable

from trackagent.adapters import PatchAdapter
from trackagent.normalizer import is_caught

logger = logging.getLogger(__name__)

ENTRY_WINDOW = "window"
ENTRY_PROMISE = "promise"


class WindowWatcher:
    """Hooks the interpreter's last-chance handlers.

    ``sys.excepthook`` and ``threading.excepthook`` report entry ``window``;
    the asyncio loop exception handler reports entry ``promise``. The
    original handler always runs afterwards. Exceptions already reported by
    a wrapper are skipped.
    """

    def __init__(self, on_error: Callable, on_fault: Callable, serialize: Callable,
                 loop_class=asyncio.BaseEventLoop):
        self._on_error = on_error
        self._on_fault = on_fault
        self._serialize = serialize
        self._sys_hook = PatchAdapter(sys, "excepthook")
        self._thread_hook = PatchAdapter(threading, "excepthook")
        self._loop_hook = PatchAdapter(loop_class, "call_exception_handler")

    def watch_errors(self) -> bool:
        installed = self._sys_hook.patch(self._wrap_sys_hook)
        return self._thread_hook.patch(self._wrap_thread_hook) and installed

    def watch_promises(self) -> bool:
        return self._loop_hook.patch(self._wrap_loop_handler)

    def restore(self):
        self._loop_hook.restore()
        self._thread_hook.restore()
        self._sys_hook.restore()

    def observe(self, entry: str, exc):
        try:
            if isinstance(exc, Exception) and not is_caught(exc):
                self._on_error(entry, exc)
        except Exception as fault:
            self._on_fault(fault)

    def observe_loop_context(self, context: dict):
        try:
            exc = context.get("exception")
            if exc is not None:
                self.observe(ENTRY_PROMISE, exc)
                return
            message = context.get("message")
            self._on_error(ENTRY_PROMISE, message if message else self._serialize(context))
        except Exception as fault:
            self._on_fault(fault)

    def _wrap_sys_hook(self, original):
        watcher = self

        def excepthook(exc_type, exc, tb):
            watcher.observe(ENTRY_WINDOW, exc)
            return original(exc_type, exc, tb)

        return excepthook

    def _wrap_thread_hook(self, original):
        watcher = self

        def excepthook(args):
            watcher.observe(ENTRY_WINDOW, args.exc_value)
            return original(args)

        return excepthook

    def _wrap_loop_handler(self, original):
        watcher = self

        def call_exception_handler(loop, context):
            watcher.observe_loop_context(context)
            return original(loop, context)

        return call_exception_handler
