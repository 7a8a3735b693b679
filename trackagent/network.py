"""Records outgoing http.client requests and reports failed ones."""

import contextlib
import http.client
import logging
import threading
from dataclasses import dataclass
from typing import Callable

from trackagent.adapters import PatchAdapter
from trackagent.event_log import NETWORK, EventLog
from trackagent.normalizer import mark_caught, synthetic_stack
from trackagent.util import escape_url, iso_now, truncate

logger = logging.getLogger(__name__)

ENTRY_AJAX = "ajax"
REQUEST_STATE = "_trackagent_request"
CORRELATION_HEADER = "TrackAgent-Correlation-Id"
URL_LIMIT = 2000

_local = threading.local()


@contextlib.contextmanager
def suppress_capture():
    """Requests made inside this block (on this thread) are not recorded."""
    previous = getattr(_local, "suppressed", False)
    _local.suppressed = True
    try:
        yield
    finally:
        _local.suppressed = previous


def capture_suppressed() -> bool:
    return getattr(_local, "suppressed", False)


@dataclass
class PendingRequest:
    key: int
    method: str
    url: str
    stack: str


def request_url(conn, url: str) -> str:
    """Absolute URL for a request line sent on *conn*."""
    if "://" in url:
        return url
    https = getattr(http.client, "HTTPSConnection", None)
    scheme = "https" if https is not None and isinstance(conn, https) else "http"
    default_port = 443 if scheme == "https" else 80
    host = conn.host if conn.port in (None, default_port) else f"{conn.host}:{conn.port}"
    return f"{scheme}://{host}{url}"


class NetworkWatcher:
    def __init__(self, log: EventLog, on_error: Callable, on_fault: Callable,
                 options: Callable, connection_class=http.client.HTTPConnection):
        self._log = log
        self._on_error = on_error
        self._on_fault = on_fault
        self._options = options
        self._putrequest = PatchAdapter(connection_class, "putrequest")
        self._getresponse = PatchAdapter(connection_class, "getresponse")

    def watch(self) -> bool:
        started = self._putrequest.patch(self._wrap_putrequest)
        finished = self._getresponse.patch(self._wrap_getresponse)
        return started and finished

    def restore(self):
        self._putrequest.restore()
        self._getresponse.restore()

    def report(self) -> list:
        return self._log.all(NETWORK)

    def _wrap_putrequest(self, original):
        watcher = self

        def putrequest(conn, method, url, *args, **kwargs):
            if not capture_suppressed():
                watcher.start(conn, method, url)
            return original(conn, method, url, *args, **kwargs)

        return putrequest

    def _wrap_getresponse(self, original):
        watcher = self

        def getresponse(conn, *args, **kwargs):
            pending = watcher.take(conn)
            if pending is None:
                return original(conn, *args, **kwargs)
            try:
                response = original(conn, *args, **kwargs)
            except Exception as exc:
                watcher.fail(pending, exc)
                raise
            watcher.complete(pending, response)
            return response

        return getresponse

    def start(self, conn, method: str, url: str):
        try:
            full_url = truncate(escape_url(request_url(conn, url)), URL_LIMIT)
            key = self._log.add(NETWORK, {
                "type": "http",
                "startedOn": iso_now(),
                "method": method,
                "url": full_url,
            })
            setattr(conn, REQUEST_STATE, PendingRequest(key, method, full_url, synthetic_stack(skip=2)))
        except Exception as exc:
            self._on_fault(exc)

    @staticmethod
    def take(conn) -> PendingRequest | None:
        pending = getattr(conn, REQUEST_STATE, None)
        if pending is not None:
            setattr(conn, REQUEST_STATE, None)
        return pending

    def complete(self, pending: PendingRequest, response):
        try:
            entry = self._log.get(NETWORK, pending.key)
            if entry is None:
                return
            entry["completedOn"] = iso_now()
            entry["statusCode"] = response.status
            entry["statusText"] = response.reason
            correlation = response.getheader(CORRELATION_HEADER)
            if correlation:
                entry["requestCorrelationId"] = correlation

            if self._options().error and response.status >= 400:
                self._on_error(ENTRY_AJAX, {
                    "name": "HTTPError",
                    "message": f"{response.status} : {pending.method} {pending.url}",
                    "stack": pending.stack,
                })
        except Exception as exc:
            self._on_fault(exc)

    def fail(self, pending: PendingRequest, exc: Exception):
        try:
            entry = self._log.get(NETWORK, pending.key)
            if entry is None:
                return
            entry["completedOn"] = iso_now()
            entry["statusCode"] = 0
            entry["statusText"] = str(exc)

            if self._options().error:
                self._on_error(ENTRY_AJAX, {
                    "name": type(exc).__name__,
                    "message": f"{str(exc) or 'Failed'}: {pending.method} {pending.url}",
                    "stack": pending.stack,
                })
                mark_caught(exc)
        except Exception as fault:
            self._on_fault(fault)
