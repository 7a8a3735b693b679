"""Navigation and visitor-action telemetry recorded by the host application."""

from typing import Callable

from trackagent.event_log import NAVIGATION, VISITOR, EventLog
from trackagent.util import iso_now, truncate

LOCATION_LIMIT = 250
ATTRIBUTE_LIMIT = 10
ATTRIBUTE_VALUE_LIMIT = 100
TEXT_LIMIT = 500
HIDDEN_ATTRIBUTES = ("value", "data-value")


class NavigationWatcher:
    def __init__(self, log: EventLog, options: Callable):
        self._log = log
        self._options = options

    def record(self, kind: str, from_location, to_location):
        """Record a move between two locations (routes, screens, CLI stages)."""
        if not self._options().enabled:
            return
        self._log.add(NAVIGATION, {
            "type": kind,
            "from": truncate(from_location, LOCATION_LIMIT),
            "to": truncate(to_location, LOCATION_LIMIT),
            "on": iso_now(),
        })

    def report(self) -> list:
        return self._log.all(NAVIGATION)


def describe_attributes(attributes: dict | None) -> dict:
    described = {}
    for name, value in list((attributes or {}).items())[:ATTRIBUTE_LIMIT]:
        if str(name).lower() in HIDDEN_ATTRIBUTES:
            continue
        described[name] = truncate(value, ATTRIBUTE_VALUE_LIMIT)
    return described


def describe_value(value, checked: bool | None = None) -> dict | None:
    """Shape of an input value without the value itself."""
    if value is None:
        return None
    return {"length": len(str(value)), "checked": checked}


class VisitorWatcher:
    """Records user actions. Raw input values never reach the log."""

    def __init__(self, log: EventLog, options: Callable):
        self._log = log
        self._options = options

    def record(self, action: str, tag: str, attributes: dict | None = None,
               value=None, checked: bool | None = None, text: str | None = None):
        if not self._options().enabled:
            return
        described = describe_attributes(attributes)
        if str((attributes or {}).get("type", "")).lower() == "password":
            value = None
        if text:
            described["__trackagent_element_text"] = truncate(text, TEXT_LIMIT)
        self._log.add(VISITOR, {
            "timestamp": iso_now(),
            "action": action,
            "element": {
                "tag": str(tag).lower(),
                "attributes": described,
                "value": describe_value(value, checked),
            },
        })

    def report(self) -> list:
        return self._log.all(VISITOR)
