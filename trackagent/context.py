"""Customer identity, process environment and the metadata store."""

import functools
import importlib.metadata
import os
import platform
import socket
import sys
import threading
import time
from typing import Callable, Mapping

from trackagent.version import __version__
from trackagent.util import new_uuid

PACKAGE_NAME = "trackagent"


class CustomerContext:
    def __init__(self, config_getter: Callable):
        self._config = config_getter
        self.correlation_id = new_uuid()

    @property
    def token(self) -> str:
        return self._config().token

    def report(self) -> dict:
        config = self._config()
        return {
            "application": config.application,
            "correlationId": self.correlation_id,
            "sessionId": config.session_id,
            "token": config.token,
            "userId": config.user_id,
            "version": config.version,
        }


@functools.lru_cache(maxsize=1)
def _distributions() -> Mapping[str, list[str]]:
    return importlib.metadata.packages_distributions()


def discover_dependencies(distributions: Mapping[str, list[str]] | None = None) -> dict[str, str]:
    """Installed versions of the distributions behind the currently imported top-level modules.

    Versions come from package metadata, so imported modules are never touched.
    """
    if distributions is None:
        distributions = _distributions()
    found = {}
    for name in list(sys.modules):
        if "." in name or name.startswith("_") or name == PACKAGE_NAME:
            continue
        for dist in distributions.get(name, ()):
            if dist in found or dist == PACKAGE_NAME:
                continue
            try:
                found[dist] = importlib.metadata.version(dist)
            except importlib.metadata.PackageNotFoundError:
                continue
    return found


def user_agent() -> str:
    return (
        f"trackagent/{__version__} {platform.python_implementation()}/"
        f"{platform.python_version()} ({platform.platform()})"
    )


class EnvironmentContext:
    def __init__(self, config_getter: Callable):
        self._config = config_getter
        self._loaded_on = time.monotonic()

    def report(self) -> dict:
        dependencies = discover_dependencies() if self._config().dependencies else {}
        return {
            "age": int((time.monotonic() - self._loaded_on) * 1000),
            "dependencies": dependencies,
            "hostname": socket.gethostname(),
            "pid": os.getpid(),
            "platform": sys.platform,
            "userAgent": user_agent(),
        }


class MetadataStore:
    """Process-wide key/value pairs included verbatim in every report."""

    def __init__(self, serialize: Callable):
        self._serialize = serialize
        self._store: dict[str, object] = {}
        self._lock = threading.Lock()

    def add(self, key: str, value):
        with self._lock:
            self._store[key] = value

    def remove(self, key: str):
        with self._lock:
            self._store.pop(key, None)

    def report(self) -> list[dict]:
        with self._lock:
            items = list(self._store.items())
        return [{"key": key, "value": self._serialize(value)} for key, value in items]
