"""Console telemetry from logging records and the private console."""

import logging
from typing import Callable

from trackagent.event_log import CONSOLE, EventLog
from trackagent.normalizer import CanonicalError, is_error_like, synthetic_stack
from trackagent.util import iso_now

ENTRY_CONSOLE = "console"
AGENT_LOGGER = "trackagent"

ERROR_SEVERITIES = ("error", "critical")
WARN_SEVERITIES = ("warn", "warning")


def is_agent_record(record: logging.LogRecord) -> bool:
    return record.name == AGENT_LOGGER or record.name.startswith(AGENT_LOGGER + ".")


class ConsoleWatcher:
    """Records console-style messages and reports error (optionally warning) severities."""

    def __init__(self, log: EventLog, on_error: Callable, on_fault: Callable,
                 serialize: Callable, options: Callable, logger: logging.Logger | None = None):
        self._log = log
        self._on_error = on_error
        self._on_fault = on_fault
        self._serialize = serialize
        self.options = options
        self._logger = logger or logging.getLogger()
        self._handler: TelemetryHandler | None = None

    def watch(self) -> bool:
        """Attach the telemetry handler to the watched logger (the root logger by default)."""
        if self._handler is not None:
            return False
        self._handler = TelemetryHandler(self)
        self._logger.addHandler(self._handler)
        return True

    def restore(self):
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler = None

    def report(self) -> list:
        return self._log.all(CONSOLE)

    def record(self, severity: str, message: str, error=None):
        try:
            self._log.add(CONSOLE, {"timestamp": iso_now(), "severity": severity, "message": message})
            if not self._should_report(severity):
                return
            if error is None:
                error = CanonicalError(name="Error", message=message, stack=synthetic_stack(skip=2))
            self._on_error(ENTRY_CONSOLE, error)
        except Exception as exc:
            self._on_fault(exc)

    def record_args(self, severity: str, args: tuple):
        """Record a call like ``console.error(*args)``."""
        try:
            subject = args[0] if len(args) == 1 else list(args)
            message = self._serialize(subject)
            error = args[0] if len(args) == 1 and is_error_like(args[0]) else None
        except Exception as exc:
            self._on_fault(exc)
            return
        self.record(severity, message, error)

    def _should_report(self, severity: str) -> bool:
        options = self.options()
        if severity in ERROR_SEVERITIES:
            return options.error
        if severity in WARN_SEVERITIES:
            return options.warn
        return False


class TelemetryHandler(logging.Handler):
    """logging handler feeding a ConsoleWatcher. Records from the agent's own loggers are ignored."""

    def __init__(self, watcher: ConsoleWatcher):
        super().__init__(level=logging.DEBUG)
        self._watcher = watcher

    def emit(self, record: logging.LogRecord):
        if is_agent_record(record):
            return
        severity = record.levelname.lower()
        if severity not in self._watcher.options().watch:
            return
        try:
            message = record.getMessage()
        except Exception:
            message = str(record.msg)
        error = record.exc_info[1] if record.exc_info else None
        self._watcher.record(severity, message, error)


class AgentConsole:
    """Private console: messages go to the telemetry log only, never to an output stream."""

    def __init__(self, watcher: ConsoleWatcher):
        self._watcher = watcher

    def log(self, *args):
        self._watcher.record_args("log", args)

    def debug(self, *args):
        self._watcher.record_args("debug", args)

    def info(self, *args):
        self._watcher.record_args("info", args)

    def warn(self, *args):
        self._watcher.record_args("warn", args)

    def error(self, *args):
        self._watcher.record_args("error", args)
