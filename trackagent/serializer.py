"""Default serializer for values attached to reports and telemetry."""

import json
import math
import traceback
from xml.etree.ElementTree import Element

UNSERIALIZABLE = "Unserializable Object"


def render_element(element: Element) -> str:
    """Render an element as its opening tag, e.g. ``<input type="text">``."""
    text = "<" + str(element.tag).lower()
    for name, value in element.attrib.items():
        text += f' {name}="{value}"'
    return text + ">"


def _exception_fields(exc: BaseException) -> dict:
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return {"name": type(exc).__name__, "message": str(exc), "stack": stack}


def _default(value):
    if isinstance(value, BaseException):
        return _exception_fields(value)
    if isinstance(value, Element):
        return render_element(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if hasattr(value, "__dict__"):
        return {k: v for k, v in vars(value).items() if not k.startswith("_")}
    return repr(value)


def _key_value_fallback(value) -> str:
    """Best-effort ``{"k":"v"}`` rendering for values json cannot handle."""
    if isinstance(value, dict):
        items = value.items()
    elif hasattr(value, "__dict__"):
        items = vars(value).items()
    else:
        return UNSERIALIZABLE

    parts = []
    for key, item in items:
        try:
            parts.append(f'"{key}":"{item}"')
        except Exception:
            continue
    return "{" + ",".join(parts) + "}" if parts else UNSERIALIZABLE


def serialize(value) -> str:
    """Serialize any value into a string.

    Strings pass through, primitives use ``str``, exceptions and elements get
    structured renderings, containers go through JSON. Cyclic or otherwise
    unserializable objects degrade to a key/value string or
    ``"Unserializable Object"``.
    """
    if isinstance(value, str):
        return value if value else "Empty String"
    if value is None:
        return "None"
    if isinstance(value, float) and math.isnan(value):
        return "NaN"
    if isinstance(value, (bool, int, float)):
        return str(value)
    if callable(value) and not isinstance(value, type):
        return repr(value)
    if isinstance(value, Element):
        return render_element(value)

    try:
        return json.dumps(value, default=_default)
    except (TypeError, ValueError, RecursionError):
        return _key_value_fallback(value)
