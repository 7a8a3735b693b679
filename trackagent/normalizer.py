"""Turns anything raised or reported into a CanonicalError."""

import traceback
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable

from trackagent.serializer import serialize as default_serialize

CAUGHT_MARKER = "__trackagent_caught__"


@dataclass
class CanonicalError:
    name: str = "Error"
    message: str = ""
    stack: str | None = None
    file: str | None = None
    line: int | None = None
    column: int | None = None
    inner_error: Any = None


def synthetic_stack(skip: int = 1) -> str:
    """Stack of the caller, minus this helper and *skip* further frames."""
    frames = traceback.format_stack()
    return "".join(frames[: -(skip + 1)] or frames)


def mark_caught(exc) -> None:
    """Flag *exc* as already reported so outer observers ignore it."""
    try:
        setattr(exc, CAUGHT_MARKER, True)
    except (AttributeError, TypeError):
        pass


def is_caught(value) -> bool:
    try:
        return getattr(value, CAUGHT_MARKER, False) is True
    except Exception:
        return False


def is_error_like(value) -> bool:
    """True for exceptions and for objects carrying a string name and message."""
    if isinstance(value, (BaseException, CanonicalError)):
        return True
    if isinstance(value, Mapping):
        return isinstance(value.get("name"), str) and isinstance(value.get("message"), str)
    try:
        return isinstance(getattr(value, "name", None), str) and isinstance(
            getattr(value, "message", None), str
        )
    except Exception:
        return False


def _from_exception(exc: BaseException, serialize) -> CanonicalError:
    message = exc.args[0] if len(exc.args) == 1 and isinstance(exc.args[0], str) else str(exc)
    error = CanonicalError(
        name=type(exc).__name__,
        message=message if isinstance(message, str) else serialize(message),
        inner_error=exc,
    )
    tb = exc.__traceback__
    if tb is None:
        # Never raised, e.g. track(ValueError("x")).
        error.stack = synthetic_stack(skip=2)
        return error

    error.stack = "".join(traceback.format_exception(type(exc), exc, tb))
    frames = traceback.extract_tb(tb)
    if frames:
        last = frames[-1]
        error.file = last.filename
        error.line = last.lineno
        error.column = getattr(last, "colno", None)
    return error


def _from_fields(fields: Callable[[str], Any], raw, serialize) -> CanonicalError:
    message = fields("message")
    return CanonicalError(
        name=fields("name") or "Error",
        message=message if isinstance(message, str) else serialize(message),
        stack=fields("stack"),
        file=fields("file") or fields("fileName"),
        line=fields("line") or fields("lineNumber"),
        column=fields("column") or fields("columnNumber"),
        inner_error=raw,
    )


def normalize(raw, serialize: Callable[[Any], str] = default_serialize) -> CanonicalError:
    """Convert *raw* into a CanonicalError.

    CanonicalErrors pass through untouched, so nested catch layers never grow
    a chain. Exceptions and error-shaped objects keep their own fields; any
    other value is serialized into the message and given a fresh stack.
    """
    if isinstance(raw, CanonicalError):
        return raw
    if isinstance(raw, BaseException):
        return _from_exception(raw, serialize)
    if isinstance(raw, Mapping) and is_error_like(raw):
        return _from_fields(raw.get, raw, serialize)
    if is_error_like(raw):
        return _from_fields(lambda name: getattr(raw, name, None), raw, serialize)

    return CanonicalError(
        name="Error",
        message=serialize(raw),
        stack=synthetic_stack(skip=1),
    )
