"""Idempotent interception of callables handed to the host."""

import functools
import inspect
import logging
import types
import weakref
from dataclasses import dataclass
from typing import Callable

from trackagent.normalizer import mark_caught, synthetic_stack
from trackagent.util import iso_now

logger = logging.getLogger(__name__)

WRAPPED_MARKER = "__trackagent__"

ENTRY_CATCH = "catch"


@dataclass(frozen=True)
class BindContext:
    """Where and when a callback was handed over, captured at wrap time."""

    bind_time: str | None = None
    bind_stack: str | None = None


NO_BIND = BindContext()


def is_wrapped(value) -> bool:
    try:
        return getattr(value, WRAPPED_MARKER, False) is True
    except Exception:
        return False


class FunctionWrapper:
    """Wraps callables so failures inside them are reported before propagating.

    ``on_error(entry, exc, bind)`` is called with entry ``"catch"``; the same
    exception object is then re-raised, flagged as caught so that outer
    observers do not report it twice. Wrappers are cached per original for as
    long as the wrapper itself is referenced, so ``wrap(f) is wrap(f)``.

    The cache holds wrappers weakly: a strong cache would keep every original
    alive through its wrapper's closure. Once nothing references a wrapper,
    wrapping the same original again yields a new wrapper with a freshly
    captured bind stack.
    """

    def __init__(self, on_error: Callable, bind_stack: bool = False):
        self._on_error = on_error
        self.bind_stack = bind_stack
        self._cache: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def wrap(self, fn):
        """Return the wrapper for *fn*; non-callables and classes come back unchanged."""
        try:
            if not callable(fn) or isinstance(fn, type) or is_wrapped(fn):
                return fn
            cached = self._lookup(fn)
            if cached is not None:
                return cached
            coroutine = inspect.iscoroutinefunction(fn)
        except Exception:
            return fn

        bind = self._capture_bind() if self.bind_stack else NO_BIND
        wrapper = self._build(fn, bind, coroutine)
        self._store(fn, wrapper)
        return wrapper

    def watch(self, fn, context=None):
        """Wrap *fn*, bound to *context* when one is given."""
        if context is not None and inspect.isfunction(fn):
            fn = types.MethodType(fn, context)
        return self.wrap(fn)

    def watch_all(self, obj, *excluded: str):
        """Replace every public callable attribute of *obj* with its wrapper, in place.

        On a class, static and class methods are re-wrapped as the same
        descriptor type so instances still call them without ``self``.
        """
        is_class = isinstance(obj, type)
        for name in dir(obj):
            if name.startswith("__") or name in excluded:
                continue
            try:
                value = inspect.getattr_static(obj, name) if is_class else getattr(obj, name)
            except Exception:
                continue
            if isinstance(value, (staticmethod, classmethod)):
                if is_wrapped(value.__func__):
                    continue
                replacement = type(value)(self.wrap(value.__func__))
            elif callable(value) and not isinstance(value, type):
                replacement = self.wrap(value)
            else:
                continue
            if replacement is value:
                continue
            try:
                setattr(obj, name, replacement)
            except (AttributeError, TypeError):
                logger.debug("Cannot watch %s.%s", type(obj).__name__, name)
        return obj

    def attempt(self, fn, context=None, *args, **kwargs):
        """Invoke *fn* once, reporting and re-raising anything it throws."""
        target = types.MethodType(fn, context) if context is not None and inspect.isfunction(fn) else fn
        try:
            return target(*args, **kwargs)
        except Exception as exc:
            self._report(exc, NO_BIND)
            raise

    def _build(self, fn, bind: BindContext, coroutine: bool):
        if coroutine:
            async def wrapper(*args, **kwargs):
                try:
                    return await fn(*args, **kwargs)
                except Exception as exc:
                    self._report(exc, bind)
                    raise
        else:
            def wrapper(*args, **kwargs):
                try:
                    return fn(*args, **kwargs)
                except Exception as exc:
                    self._report(exc, bind)
                    raise

        try:
            functools.update_wrapper(wrapper, fn)
        except Exception:
            logger.debug("Could not copy attributes from %r", fn)
        setattr(wrapper, WRAPPED_MARKER, True)
        return wrapper

    def _report(self, exc: Exception, bind: BindContext):
        try:
            self._on_error(ENTRY_CATCH, exc, bind)
        except Exception:
            logger.debug("on_error callback failed", exc_info=True)
        mark_caught(exc)

    @staticmethod
    def _capture_bind() -> BindContext:
        return BindContext(bind_time=iso_now(), bind_stack=synthetic_stack(skip=2))

    def _lookup(self, fn):
        try:
            return self._cache.get(fn)
        except TypeError:
            return None

    def _store(self, fn, wrapper):
        try:
            self._cache[fn] = wrapper
        except TypeError:
            logger.debug("Unhashable callable %r wrapped without caching", fn)
