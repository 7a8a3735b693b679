"""The agent engine coordinating interception, aggregation and delivery."""

import logging
import sys
import threading
import traceback
from typing import Mapping

from trackagent.assembler import ReportAssembler
from trackagent.callbacks import CallbackWatcher
from trackagent.config import DEFAULT_CONFIG, apply_options, build_config, load_config
from trackagent.console import AgentConsole, ConsoleWatcher
from trackagent.context import CustomerContext, EnvironmentContext, MetadataStore
from trackagent.event_log import EventLog
from trackagent.gate import Candidate, Gate
from trackagent.network import NetworkWatcher
from trackagent.normalizer import is_caught, normalize
from trackagent.scheduler import ThreadScheduler
from trackagent.serializer import serialize as default_serialize
from trackagent.telemetry import NavigationWatcher, VisitorWatcher
from trackagent.transmitter import FAULT_STACK_LIMIT, Transmitter
from trackagent.util import iso_now, new_uuid
from trackagent.version import __version__
from trackagent.window import WindowWatcher
from trackagent.wrapper import ENTRY_CATCH, NO_BIND, BindContext, FunctionWrapper

logger = logging.getLogger(__name__)

ENTRY_DIRECT = "direct"


class Agent:
    """Installs the watchers and runs every captured failure through
    normalize -> admit -> assemble -> hook -> send.

    Collaborators that touch the outside world (transport, scheduler, clock)
    are injectable so the whole host can be replaced in tests. Nothing public
    here raises into the host application.
    """

    def __init__(self, transport=None, scheduler=None, time_func=None):
        self._transport = transport
        self._scheduler = scheduler or ThreadScheduler()
        self._time_func = time_func
        self._lock = threading.RLock()
        self._installed = False
        self._enabled = True

        self.config = DEFAULT_CONFIG
        self.log = EventLog()
        self.metadata = MetadataStore(self.serialize)
        self.gate = Gate(time_func=time_func)
        self.wrapper = FunctionWrapper(self.on_error)
        self.transmitter: Transmitter | None = None
        self.customer: CustomerContext | None = None
        self.environment: EnvironmentContext | None = None
        self.assembler: ReportAssembler | None = None

        self.console_watcher = ConsoleWatcher(
            self.log, self.on_error, self.on_fault, self.serialize, lambda: self.config.console,
        )
        self.console = AgentConsole(self.console_watcher)
        self.navigation = NavigationWatcher(self.log, lambda: self.config.navigation)
        self.visitor = VisitorWatcher(self.log, lambda: self.config.visitor)
        self.network_watcher = NetworkWatcher(
            self.log, self.on_error, self.on_fault, lambda: self.config.network,
        )
        self.callback_watcher = CallbackWatcher(self.wrapper)
        self.window_watcher = WindowWatcher(self.on_error, self.on_fault, self.serialize)

    def install(self, options: Mapping | None = None, **kwargs) -> bool:
        """Install the agent. Only the first successful call has any effect."""
        try:
            options = {**(options or {}), **kwargs}
            if not options.get("token"):
                self._warn("missing token")
                return False

            with self._lock:
                if self._installed:
                    self._warn("already installed")
                    return False

                self.config, ok = build_config(options)
                if not ok:
                    self._warn("invalid config")
                self.gate.dedupe = self.config.dedupe
                self.transmitter = Transmitter(
                    lambda: self.config, self._transport, self.on_fault, time_func=self._time_func,
                )
                self.customer = CustomerContext(lambda: self.config)
                self.environment = EnvironmentContext(lambda: self.config)
                if not self.config.enabled:
                    self._enabled = False
                    return False

                self.assembler = ReportAssembler(self.log, {
                    "console": self.console_watcher,
                    "network": self.network_watcher,
                    "nav": self.navigation,
                    "visitor": self.visitor,
                    "customer": self.customer,
                    "environment": self.environment,
                    "metadata": self.metadata,
                })
                self._watch()
                self._installed = True

            logger.info("Agent installed for application %r", self.config.application)
            self._scheduler.defer(self._send_usage)
            return True
        except Exception as exc:
            self.on_fault(exc)
            return False

    def install_from_environment(self, environ: Mapping | None = None) -> bool:
        return self.install(load_config(environ))

    def uninstall(self):
        """Restore every patched host surface and forget the current installation."""
        with self._lock:
            self.window_watcher.restore()
            self.network_watcher.restore()
            self.callback_watcher.restore()
            self.console_watcher.restore()
            self.log.clear()
            self._installed = False
            self._enabled = True
            self.config = DEFAULT_CONFIG

    def is_installed(self) -> bool:
        return self._installed

    def configure(self, options: Mapping) -> bool:
        """Change runtime options; install-only options are rejected with a warning."""
        if not self._installed:
            if self._enabled:
                self._warn("agent must be installed")
            return False
        with self._lock:
            self.config, ok = apply_options(self.config, options)
            self.gate.dedupe = self.config.dedupe
        return ok

    def track(self, error) -> None:
        """Report *error* directly (entry ``direct``)."""
        if not self._installed:
            if self._enabled:
                self._warn("agent must be installed")
            return
        self.on_error(ENTRY_DIRECT, error)

    def watch(self, fn, context=None):
        return self.wrapper.watch(fn, context)

    def watch_all(self, obj, *excluded: str):
        return self.wrapper.watch_all(obj, *excluded)

    def attempt(self, fn, context=None, *args, **kwargs):
        return self.wrapper.attempt(fn, context, *args, **kwargs)

    def add_metadata(self, key: str, value):
        self.metadata.add(key, value)

    def remove_metadata(self, key: str):
        self.metadata.remove(key)

    def record_navigation(self, kind: str, from_location, to_location):
        self.navigation.record(kind, from_location, to_location)

    def record_action(self, action: str, tag: str, attributes: dict | None = None,
                      value=None, checked: bool | None = None, text: str | None = None):
        self.visitor.record(action, tag, attributes, value, checked, text)

    def on_error(self, entry: str, error, bind: BindContext = NO_BIND, force: bool = False):
        """Entry point for every captured failure. Never raises."""
        if not self._installed or not self._enabled:
            return
        try:
            self._capture(entry, error, bind or NO_BIND, force)
        except Exception as exc:
            self.on_fault(exc)

    def _capture(self, entry: str, error, bind: BindContext, force: bool):
        if is_caught(error):
            return
        guard = self.assembler.guard
        entered = guard.enter()
        if not entered and not force:
            logger.debug("Dropping failure raised while reporting: %.80r", error)
            return

        try:
            canonical = normalize(error, lambda value: self.serialize(value, force))
            candidate = Candidate(entry, canonical)
            if not force and not self.gate.admit(candidate):
                return

            payload = self.assembler.assemble(candidate, bind)
            if not force and not self._hook_allows(payload, error):
                logger.debug("Report vetoed by on_error hook: %.80s", canonical.message)
                return
            if not force:
                self.gate.commit(candidate)
            self.assembler.complete()
            self.transmitter.send_error(payload, self.customer.token)
        finally:
            if entered:
                guard.release()

    def _hook_allows(self, payload, error) -> bool:
        try:
            return bool(self.config.on_error(payload, error))
        except Exception as exc:
            payload.console.append({"timestamp": iso_now(), "severity": "error", "message": str(exc)})
            self._scheduler.defer(self.on_error, ENTRY_CATCH, exc, NO_BIND, True)
            return True

    def serialize(self, value, force: bool = False) -> str:
        """Serialize with the customer's serializer, falling back to the default one."""
        custom = self.config.serialize
        if self._installed and not force and custom is not default_serialize:
            try:
                return str(custom(value))
            except Exception as exc:
                self.on_error(ENTRY_CATCH, exc, NO_BIND, True)
        return default_serialize(value)

    def on_fault(self, exc):
        """Report a failure inside the agent itself on the fault channel."""
        logger.debug("Agent fault", exc_info=exc if isinstance(exc, BaseException) else None)
        try:
            transmitter = self.transmitter or Transmitter(lambda: self.config, self._transport)
            transmitter.send_fault(self._fault_params(exc))
        except Exception:
            logger.debug("Could not report agent fault", exc_info=True)

    def _fault_params(self, exc) -> dict:
        file = None
        stack = "unknown"
        if isinstance(exc, BaseException) and exc.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            file = traceback.extract_tb(exc.__traceback__)[-1].filename
        return {
            "token": self.customer.token if self.customer else "",
            "file": file or "",
            "msg": str(exc) or "unknown",
            "stack": stack[:FAULT_STACK_LIMIT],
            "url": " ".join(sys.argv),
            "v": __version__,
            "x": new_uuid(),
        }

    def _watch(self):
        config = self.config
        self.wrapper.bind_stack = config.callback.bind_stack
        if config.console.enabled:
            self.console_watcher.watch()
        if config.callback.enabled:
            self.callback_watcher.watch()
        if config.network.enabled:
            self.network_watcher.watch()
        if config.window.enabled:
            self.window_watcher.watch_errors()
        if config.window.promise:
            self.window_watcher.watch_promises()

    def _send_usage(self):
        self.transmitter.send_usage({
            "token": self.customer.token,
            "correlationId": self.customer.correlation_id,
            "application": self.config.application,
            "x": new_uuid(),
        })

    @staticmethod
    def _warn(message: str):
        logger.warning("[trackagent] %s", message)
