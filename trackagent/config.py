"""Agent configuration: frozen option dataclasses, validation, env vars and YAML."""

import dataclasses
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Callable

import yaml

from trackagent.serializer import serialize as default_serialize

logger = logging.getLogger(__name__)

DEFAULT_ERROR_URL = "https://capture.trackagent.dev/capture"
DEFAULT_ERROR_NO_SSL_URL = "http://capture.trackagent.dev/capture"
DEFAULT_FAULT_URL = "https://usage.trackagent.dev/fault.gif"
DEFAULT_USAGE_URL = "https://usage.trackagent.dev/usage.gif"

CONSOLE_LEVELS = ("debug", "info", "warning", "error", "critical")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def accept_all(payload, error) -> bool:
    return True


@dataclass(frozen=True)
class CallbackOptions:
    enabled: bool = True
    bind_stack: bool = False


@dataclass(frozen=True)
class ConsoleOptions:
    enabled: bool = True
    error: bool = True
    warn: bool = False
    watch: tuple[str, ...] = CONSOLE_LEVELS


@dataclass(frozen=True)
class NavigationOptions:
    enabled: bool = True


@dataclass(frozen=True)
class NetworkOptions:
    enabled: bool = True
    error: bool = True


@dataclass(frozen=True)
class VisitorOptions:
    enabled: bool = True


@dataclass(frozen=True)
class WindowOptions:
    enabled: bool = True
    promise: bool = True


@dataclass(frozen=True)
class AgentConfig:
    token: str = ""
    application: str = ""
    enabled: bool = True
    dedupe: bool = True
    dependencies: bool = True
    forwarding_domain: str = ""
    error_url: str = DEFAULT_ERROR_URL
    error_no_ssl_url: str = DEFAULT_ERROR_NO_SSL_URL
    fault_url: str = DEFAULT_FAULT_URL
    usage_url: str = DEFAULT_USAGE_URL
    session_id: str = ""
    user_id: str = ""
    version: str = ""
    on_error: Callable = accept_all
    serialize: Callable = default_serialize
    callback: CallbackOptions = field(default_factory=CallbackOptions)
    console: ConsoleOptions = field(default_factory=ConsoleOptions)
    navigation: NavigationOptions = field(default_factory=NavigationOptions)
    network: NetworkOptions = field(default_factory=NetworkOptions)
    visitor: VisitorOptions = field(default_factory=VisitorOptions)
    window: WindowOptions = field(default_factory=WindowOptions)


DEFAULT_CONFIG = AgentConfig()

# Options that only take effect at install time.
INIT_ONLY = {
    "application": True,
    "enabled": True,
    "token": True,
    "callback": {"enabled": True, "bind_stack": True},
    "console": {"enabled": True, "watch": True},
    "navigation": {"enabled": True},
    "network": {"enabled": True},
    "visitor": {"enabled": True},
    "window": {"enabled": True, "promise": True},
}

LIST_CHOICES = {"watch": CONSOLE_LEVELS}


def _type_error(current) -> str | None:
    """Name of the type a replacement for *current* must have."""
    if isinstance(current, bool):
        return "bool"
    if isinstance(current, str):
        return "str"
    if isinstance(current, tuple):
        return "list"
    if dataclasses.is_dataclass(current):
        return "dict"
    if callable(current):
        return "callable"
    return None


def _matches(current, value) -> bool:
    if isinstance(current, bool):
        return isinstance(value, bool)
    if isinstance(current, str):
        return isinstance(value, str)
    if isinstance(current, tuple):
        return isinstance(value, (list, tuple))
    if dataclasses.is_dataclass(current):
        return isinstance(value, Mapping)
    if callable(current):
        return callable(value)
    return True


def _validate(current, options: Mapping, path: str, init_only) -> tuple[dict, bool]:
    """Return (accepted changes, ok). Rejected fields are logged and left out."""
    names = {f.name for f in dataclasses.fields(current)}
    init_only = init_only or {}
    accepted: dict = {}
    ok = True

    for key, value in options.items():
        if value is None:
            continue
        where = f"{path}.{key}"
        if key not in names:
            logger.warning("%s: property not supported.", where)
            ok = False
            continue

        existing = getattr(current, key)
        if not _matches(existing, value):
            logger.warning("%s: property must be type %s.", where, _type_error(existing))
            ok = False
            continue

        if dataclasses.is_dataclass(existing):
            changes, section_ok = _validate(existing, value, where, init_only.get(key))
            ok = ok and section_ok
            if changes:
                accepted[key] = dataclasses.replace(existing, **changes)
            continue

        if init_only.get(key) is True:
            logger.warning("%s: property cannot be set after load.", where)
            ok = False
            continue

        if isinstance(existing, tuple):
            choices = LIST_CHOICES.get(key, ())
            invalid = [(index, item) for index, item in enumerate(value) if item not in choices]
            for index, item in invalid:
                logger.warning("%s[%d]: invalid value: %s.", where, index, item)
            if invalid:
                ok = False
                continue
            value = tuple(value)

        accepted[key] = value

    return accepted, ok


def build_config(options: Mapping | None) -> tuple[AgentConfig, bool]:
    """Build the install-time config. Invalid fields fall back to their defaults."""
    changes, ok = _validate(DEFAULT_CONFIG, options or {}, "[trackagent] config", None)
    return dataclasses.replace(DEFAULT_CONFIG, **changes), ok


def apply_options(current: AgentConfig, options: Mapping | None) -> tuple[AgentConfig, bool]:
    """Apply runtime changes on top of *current*; install-only options are refused."""
    changes, ok = _validate(current, options or {}, "[trackagent] config", INIT_ONLY)
    return dataclasses.replace(current, **changes), ok


ENV_OPTIONS = {
    "TRACKAGENT_TOKEN": ("token", str),
    "TRACKAGENT_APPLICATION": ("application", str),
    "TRACKAGENT_ENABLED": ("enabled", _parse_bool),
    "TRACKAGENT_DEDUPE": ("dedupe", _parse_bool),
    "TRACKAGENT_FORWARDING_DOMAIN": ("forwarding_domain", str),
    "TRACKAGENT_SESSION_ID": ("session_id", str),
    "TRACKAGENT_USER_ID": ("user_id", str),
    "TRACKAGENT_VERSION": ("version", str),
    "TRACKAGENT_ERROR_URL": ("error_url", str),
    "TRACKAGENT_FAULT_URL": ("fault_url", str),
    "TRACKAGENT_USAGE_URL": ("usage_url", str),
}


def load_yaml_config(path: str | None) -> dict:
    """Load install options from a YAML file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.info("Loaded YAML config from %s", path)
        return data
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}


def load_config(environ: Mapping | None = None) -> dict:
    """Build install options from defaults <- YAML file (TRACKAGENT_CONFIG) <- env vars."""
    if environ is None:
        environ = os.environ

    options = load_yaml_config(environ.get("TRACKAGENT_CONFIG"))
    for variable, (key, parse) in ENV_OPTIONS.items():
        if variable in environ:
            options[key] = parse(environ[variable])
    return options
