"""Merges an admitted error with telemetry snapshots and context into a report."""

import logging
import sys
import threading
from dataclasses import dataclass, field
from typing import Mapping

from trackagent.event_log import EventLog
from trackagent.gate import Candidate
from trackagent.util import iso_now, truncate
from trackagent.version import __version__
from trackagent.wrapper import NO_BIND, BindContext

logger = logging.getLogger(__name__)

CONSOLE_BUDGET = 80_000
CONSOLE_ENTRY_LIMIT = 1_000


@dataclass
class ReportPayload:
    entry: str
    name: str
    message: str
    stack: str | None = None
    file: str | None = None
    line: int | None = None
    column: int | None = None
    bind_stack: str | None = None
    bind_time: str | None = None
    throttled: int = 0
    timestamp: str = field(default_factory=iso_now)
    url: str = ""
    console: list = field(default_factory=list)
    network: list = field(default_factory=list)
    nav: list = field(default_factory=list)
    visitor: list = field(default_factory=list)
    customer: dict = field(default_factory=dict)
    environment: dict = field(default_factory=dict)
    metadata: list = field(default_factory=list)
    agent_platform: str = "python"
    version: str = __version__

    def to_dict(self) -> dict:
        """Wire representation (camelCase keys)."""
        return {
            "agentPlatform": self.agent_platform,
            "bindStack": self.bind_stack,
            "bindTime": self.bind_time,
            "column": self.column,
            "console": self.console,
            "customer": self.customer,
            "entry": self.entry,
            "environment": self.environment,
            "file": self.file,
            "line": self.line,
            "message": self.message,
            "metadata": self.metadata,
            "name": self.name,
            "nav": self.nav,
            "network": self.network,
            "stack": self.stack,
            "throttled": self.throttled,
            "timestamp": self.timestamp,
            "url": self.url,
            "version": self.version,
            "visitor": self.visitor,
        }


def cap_console(entries: list[dict], budget: int = CONSOLE_BUDGET,
                entry_limit: int = CONSOLE_ENTRY_LIMIT) -> list[dict]:
    """Truncate console messages, oldest first, until their total length is under *budget*."""

    def total() -> int:
        return sum(len(entry.get("message") or "") for entry in entries)

    index = 0
    while index < len(entries) and total() >= budget:
        entries[index]["message"] = truncate(entries[index].get("message") or "", entry_limit)
        index += 1
    return entries


class ReentryGuard:
    """Per-thread "currently reporting" flag.

    Held for the synchronous extent of one report, so a failure raised while
    that report is being built or sent on the same thread is dropped instead
    of recursing. Other threads are unaffected.
    """

    def __init__(self):
        self._active: set[int] = set()
        self._lock = threading.Lock()

    def enter(self) -> bool:
        ident = threading.get_ident()
        with self._lock:
            if ident in self._active:
                return False
            self._active.add(ident)
            return True

    def release(self):
        with self._lock:
            self._active.discard(threading.get_ident())

    def active(self) -> bool:
        with self._lock:
            return threading.get_ident() in self._active


class ReportAssembler:
    """Builds ReportPayloads from telemetry snapshots and context providers.

    *providers* maps payload sections (``console``, ``network``, ``nav``,
    ``visitor``, ``customer``, ``environment``, ``metadata``) to objects with a
    ``report()`` method. Providers are called synchronously and must not block.
    """

    def __init__(self, log: EventLog, providers: Mapping[str, object]):
        self._log = log
        self._providers = providers
        self.guard = ReentryGuard()

    def assemble(self, candidate: Candidate, bind: BindContext = NO_BIND) -> ReportPayload:
        error = candidate.error
        payload = ReportPayload(
            entry=candidate.entry,
            name=error.name,
            message=error.message,
            stack=error.stack,
            file=error.file,
            line=error.line,
            column=error.column,
            bind_stack=bind.bind_stack,
            bind_time=bind.bind_time,
            throttled=candidate.throttled,
            url=" ".join(sys.argv),
        )
        for section, provider in self._providers.items():
            setattr(payload, section, provider.report())
        cap_console(payload.console)
        return payload

    def complete(self):
        """Drop the telemetry already attached to a sent report."""
        self._log.clear()
