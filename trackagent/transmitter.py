"""Fire-and-forget delivery of error reports, usage beacons and fault beacons."""

import importlib.util
import json
import logging
import threading
from typing import Callable
from urllib.parse import urlencode

import requests

from trackagent.assembler import ReportPayload
from trackagent.callbacks import unwatched
from trackagent.gate import WindowThrottle
from trackagent.network import suppress_capture
from trackagent.version import __version__

logger = logging.getLogger(__name__)

ERROR_SUCCESS = (200, 202)
FAULT_STACK_LIMIT = 1000


def has_ssl() -> bool:
    return importlib.util.find_spec("ssl") is not None


class Channel:
    """One outbound delivery path. Once disabled it stays disabled."""

    def __init__(self, name: str, enabled: bool = True):
        self.name = name
        self._enabled = enabled
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def disable(self, reason: str):
        with self._lock:
            if not self._enabled:
                return
            self._enabled = False
        logger.info("Disabled %s channel: %s", self.name, reason)


class HttpTransport:
    """Delivers over HTTP with requests, each call on its own daemon thread.

    ``on_complete`` receives the response status, or None when the request
    failed before a response arrived. Anything other than a request error is
    passed to *on_fault* after ``on_complete(None)``.
    """

    def __init__(self, timeout: float = 10.0, on_fault: Callable | None = None):
        self._timeout = timeout
        self._on_fault = on_fault

    def can_send(self) -> bool:
        return True

    def post(self, url: str, body: str, on_complete: Callable | None = None):
        self._dispatch(self._request, "POST", url, body, on_complete)

    def beacon(self, url: str, on_complete: Callable | None = None):
        self._dispatch(self._request, "GET", url, None, on_complete)

    def _dispatch(self, *args):
        with unwatched():
            thread = threading.Thread(target=self._run, args=args, daemon=True)
        thread.start()

    def _run(self, request, method, url, body, on_complete):
        try:
            status = request(method, url, body)
            if on_complete is not None:
                on_complete(status)
        except Exception as exc:
            logger.debug("%s %s raised", method, url, exc_info=True)
            if on_complete is not None:
                self._complete_failed(on_complete)
            self._fault(exc)

    def _request(self, method: str, url: str, body: str | None) -> int | None:
        try:
            with suppress_capture():
                resp = requests.request(
                    method, url, data=body,
                    headers={"Content-Type": "text/plain"},
                    timeout=self._timeout,
                )
            return resp.status_code
        except requests.RequestException as exc:
            logger.debug("%s %s failed: %s", method, url, exc)
            return None

    @staticmethod
    def _complete_failed(on_complete: Callable):
        try:
            on_complete(None)
        except Exception:
            logger.debug("Completion callback failed", exc_info=True)

    def _fault(self, exc: Exception):
        if self._on_fault is None:
            return
        try:
            self._on_fault(exc)
        except Exception:
            logger.debug("Fault handler failed", exc_info=True)


def append_query(url: str, params: dict) -> str:
    return f"{url}?{urlencode(params)}"


class Transmitter:
    """Sends error reports, usage beacons and agent fault beacons.

    Each kind travels on its own channel. A non-success status or a transport
    failure disables that channel for the rest of the process: no retries, no
    queue. Nothing here raises to the caller; internal failures go to
    *on_fault*.
    """

    def __init__(self, config_getter: Callable, transport=None, on_fault: Callable | None = None,
                 secure: bool | None = None, time_func=None):
        self._config = config_getter
        self._transport = transport or HttpTransport(on_fault=self._fault)
        self._on_fault = on_fault
        self._secure = has_ssl() if secure is None else secure
        self._fault_throttle = WindowThrottle(time_func=time_func)

        available = self._transport.can_send()
        self.error_channel = Channel("error", enabled=available)
        self.usage_channel = Channel("usage", enabled=available)
        self.fault_channel = Channel("fault", enabled=available)

    def error_endpoint(self, token: str) -> str:
        config = self._config()
        url = config.error_url
        if not self._secure:
            url = config.error_no_ssl_url
        elif config.forwarding_domain:
            url = f"https://{config.forwarding_domain}/capture"
        return append_query(url, {"token": token, "v": __version__})

    def usage_endpoint(self, params: dict) -> str:
        config = self._config()
        url = config.usage_url
        if config.forwarding_domain:
            url = f"https://{config.forwarding_domain}/usage.gif"
        return append_query(url, params)

    def fault_endpoint(self, params: dict) -> str:
        config = self._config()
        url = config.fault_url
        if config.forwarding_domain:
            url = f"https://{config.forwarding_domain}/fault.gif"
        return append_query(url, params)

    def send_error(self, payload: ReportPayload, token: str):
        """Serialize *payload* now and post it; the payload is not touched afterwards."""
        if not self.error_channel.enabled:
            return
        try:
            body = json.dumps(payload.to_dict(), default=str)
            self._transport.post(self.error_endpoint(token), body, self._error_complete)
        except Exception as exc:
            self.error_channel.disable(f"send raised {exc!r}")
            self._fault(exc)

    def send_usage(self, params: dict):
        if not self.usage_channel.enabled:
            return
        try:
            self._transport.beacon(self.usage_endpoint(params), self._beacon_complete(self.usage_channel))
        except Exception as exc:
            self.usage_channel.disable(f"send raised {exc!r}")
            self._fault(exc)

    def send_fault(self, params: dict):
        """Report a failure inside the agent. Never routes back into the fault path."""
        if not self.fault_channel.enabled:
            return
        allowed, _ = self._fault_throttle.hit()
        if not allowed:
            return
        try:
            self._transport.beacon(self.fault_endpoint(params), self._beacon_complete(self.fault_channel))
        except Exception as exc:
            self.fault_channel.disable(f"send raised {exc!r}")
            logger.debug("Fault beacon failed", exc_info=True)

    def _error_complete(self, status: int | None):
        if status not in ERROR_SUCCESS:
            self.error_channel.disable(f"status {status}")

    @staticmethod
    def _beacon_complete(channel: Channel) -> Callable:
        def complete(status: int | None):
            if status is None or not 200 <= status < 300:
                channel.disable(f"status {status}")
        return complete

    def _fault(self, exc: Exception):
        if self._on_fault is None:
            logger.debug("Transmitter fault", exc_info=exc)
            return
        try:
            self._on_fault(exc)
        except Exception:
            logger.debug("Fault handler failed", exc_info=True)
