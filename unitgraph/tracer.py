"""Runtime call tracing for callables that implement known units.

:meth:`CallTracer.trace_fn` wraps a callable so every invocation records a
:class:`~unitgraph.models.CallStart` and exactly one
:class:`~unitgraph.models.CallEnd` or :class:`~unitgraph.models.CallError`,
for synchronous returns, raised errors, coroutine functions and plain
functions that return an awaitable.

Parent attribution uses a :class:`contextvars.ContextVar` holding an
immutable tuple of :class:`~unitgraph.models.CallFrame`.  Every asyncio task
and every thread sees its own call chain, so interleaved coroutines do not
steal each other's parents the way a single shared stack would.  Frames are
pushed with ``ContextVar.set`` and popped with ``ContextVar.reset`` in a
``finally`` block, so each call returns the chain to its pre-call depth
exactly once.

For a plain function returning an awaitable, the frame is popped when the
function returns and the completion event is recorded when the awaitable
settles.  A returned :class:`asyncio.Future` (a scheduled Task included) is
handed back unchanged and observed through ``add_done_callback``, so the
event is recorded even if the caller never awaits it.  A bare coroutine is
wrapped, and calls made while it runs are attributed to the traced call.
"""

from __future__ import annotations

import asyncio
import contextvars
import datetime as _dt
import functools
import inspect
import logging
import re
import threading
import time
import traceback
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .models import CallEnd, CallError, CallFrame, CallStart

logger = logging.getLogger(__name__)

TraceEvent = Union[CallStart, CallEnd, CallError]

_TRACED_ATTR = "__unitgraph_traced__"
_MAX_STRING_SAMPLE = 200
_MAX_KEYS_SAMPLE = 3
_STACK_LINES = 3

_call_chain: contextvars.ContextVar[Tuple[CallFrame, ...]] = contextvars.ContextVar(
    "unitgraph_call_chain", default=()
)


def current_call_chain() -> Tuple[CallFrame, ...]:
    """Frames of the traced calls enclosing the current task, outermost first."""
    return _call_chain.get()


def sample_value(value: Any) -> Any:
    """Shallow, size-bounded, type-tagged sample of ``value`` for the trace log."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        if len(value) > _MAX_STRING_SAMPLE:
            return value[:_MAX_STRING_SAMPLE] + "..."
        return value
    if isinstance(value, BaseException):
        return f"[{type(value).__name__}: {value}]"
    if isinstance(value, (_dt.datetime, _dt.date, _dt.time)):
        return value.isoformat()
    if isinstance(value, re.Pattern):
        return f"/{value.pattern}/"
    if callable(value) and not isinstance(value, type):
        return f"[Function: {getattr(value, '__name__', None) or 'anonymous'}]"
    if isinstance(value, Mapping):
        keys = [str(k) for k in list(value.keys())[:_MAX_KEYS_SAMPLE + 1]]
        if not keys:
            return "{}"
        more = "..." if len(keys) > _MAX_KEYS_SAMPLE else ""
        return f"{{{type(value).__name__}: {', '.join(keys[:_MAX_KEYS_SAMPLE])}{more}}}"
    if isinstance(value, (list, tuple, set, frozenset)):
        if not value:
            return "[]"
        return f"[{type(value).__name__}({len(value)})]"
    if isinstance(value, (bytes, bytearray)):
        return f"[{type(value).__name__}({len(value)})]"
    return f"[{type(value).__name__}]"


def format_error(error: BaseException) -> Dict[str, Any]:
    """Name, message and the first lines of the traceback of ``error``."""
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return {
        "name": type(error).__name__,
        "message": str(error),
        "stack": "\n".join(stack.strip().splitlines()[:_STACK_LINES]),
    }


class TraceLog:
    """Mutex-guarded, append-only event log.

    The lock covers single operations only; consumers take a
    :meth:`snapshot` and later :meth:`discard` exactly the events they
    consumed, so events recorded in between are kept.
    """

    def __init__(self) -> None:
        self._events: List[TraceEvent] = []
        self._lock = threading.Lock()

    def append(self, event: TraceEvent) -> None:
        with self._lock:
            self._events.append(event)

    def snapshot(self) -> List[TraceEvent]:
        with self._lock:
            return list(self._events)

    def discard(self, count: int) -> None:
        """Drop the oldest ``count`` events."""
        with self._lock:
            del self._events[:count]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class _ActiveCall:
    __slots__ = ("frame", "started")

    def __init__(self, frame: CallFrame, started: float) -> None:
        self.frame = frame
        self.started = started


class CallTracer:
    """Wraps callables and records their invocations into a :class:`TraceLog`."""

    def __init__(self, log: Optional[TraceLog] = None) -> None:
        self.log = log if log is not None else TraceLog()

    # ------------------------------------------------------------------
    # Event recording
    # ------------------------------------------------------------------

    def _begin(self, name: str, unit_id: Optional[str], args: tuple, kwargs: dict) -> _ActiveCall:
        chain = _call_chain.get()
        parent = chain[-1] if chain else None
        frame = CallFrame(id=f"call_{uuid.uuid4().hex}", name=name, unit_id=unit_id)
        samples = [sample_value(a) for a in args]
        samples.extend({k: sample_value(v)} for k, v in kwargs.items())
        self.log.append(CallStart(
            id=frame.id,
            parent_id=parent.id if parent else None,
            parent_unit_id=parent.unit_id if parent else None,
            unit_id=unit_id,
            name=name,
            timestamp=time.time(),
            args_sample=samples,
        ))
        return _ActiveCall(frame, time.perf_counter())

    def _end(self, call: _ActiveCall, result: Any, is_async: bool) -> None:
        self.log.append(CallEnd(
            id=call.frame.id,
            timestamp=time.time(),
            duration=time.perf_counter() - call.started,
            return_value_sample=sample_value(result),
            is_async=is_async,
        ))

    def _error(self, call: _ActiveCall, error: BaseException, is_async: bool) -> None:
        self.log.append(CallError(
            id=call.frame.id,
            timestamp=time.time(),
            duration=time.perf_counter() - call.started,
            error=format_error(error),
            is_async=is_async,
        ))

    async def _settle(self, call: _ActiveCall, awaitable: Awaitable[Any]) -> Any:
        token = _call_chain.set(_call_chain.get() + (call.frame,))
        try:
            result = await awaitable
        except BaseException as exc:
            self._error(call, exc, is_async=True)
            raise
        finally:
            _call_chain.reset(token)
        self._end(call, result, is_async=True)
        return result

    def _future_done(self, call: _ActiveCall, future: "asyncio.Future[Any]") -> None:
        if future.cancelled():
            self._error(call, asyncio.CancelledError(), is_async=True)
        elif future.exception() is not None:
            self._error(call, future.exception(), is_async=True)
        else:
            self._end(call, future.result(), is_async=True)

    # ------------------------------------------------------------------
    # Wrapping
    # ------------------------------------------------------------------

    def trace_fn(self, fn: Callable[..., Any], name: Optional[str] = None, unit_id: Optional[str] = None) -> Callable[..., Any]:
        """Return a traced version of ``fn``; traced callables are returned as is."""
        if getattr(fn, _TRACED_ATTR, False):
            return fn
        label = name or getattr(fn, "__qualname__", None) or getattr(fn, "__name__", "anonymous")

        if inspect.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def traced_async(*args: Any, **kwargs: Any) -> Any:
                call = self._begin(label, unit_id, args, kwargs)
                token = _call_chain.set(_call_chain.get() + (call.frame,))
                try:
                    result = await fn(*args, **kwargs)
                except BaseException as exc:
                    self._error(call, exc, is_async=True)
                    raise
                finally:
                    _call_chain.reset(token)
                self._end(call, result, is_async=True)
                return result

            setattr(traced_async, _TRACED_ATTR, True)
            return traced_async

        @functools.wraps(fn)
        def traced(*args: Any, **kwargs: Any) -> Any:
            call = self._begin(label, unit_id, args, kwargs)
            token = _call_chain.set(_call_chain.get() + (call.frame,))
            try:
                result = fn(*args, **kwargs)
            except BaseException as exc:
                self._error(call, exc, is_async=False)
                raise
            finally:
                _call_chain.reset(token)
            if asyncio.isfuture(result):
                result.add_done_callback(functools.partial(self._future_done, call))
                return result
            if inspect.isawaitable(result):
                return self._settle(call, result)
            self._end(call, result, is_async=False)
            return result

        setattr(traced, _TRACED_ATTR, True)
        return traced

    def trace_object(self, obj: Any, prefix: str = "", unit_id_map: Optional[Mapping[str, str]] = None) -> int:
        """Trace the callables reachable from ``obj``'s attributes, recursively.

        Names are dotted paths from ``prefix``; ``unit_id_map`` maps such
        names to unit ids.  Returns the number of callables wrapped.
        """
        unit_id_map = unit_id_map or {}
        return self._trace_members(obj, prefix, unit_id_map, set())

    def _trace_members(self, obj: Any, prefix: str, unit_id_map: Mapping[str, str], seen: set) -> int:
        if id(obj) in seen:
            return 0
        seen.add(id(obj))
        wrapped = 0
        namespace = obj if isinstance(obj, dict) else getattr(obj, "__dict__", None)
        if namespace is None:
            return 0
        for key in list(namespace):
            if key.startswith("__"):
                continue
            value = namespace[key]
            full_name = f"{prefix}.{key}" if prefix else key
            if inspect.isfunction(value) or inspect.ismethod(value):
                if getattr(value, _TRACED_ATTR, False):
                    continue
                traced = self.trace_fn(value, full_name, unit_id_map.get(full_name))
                try:
                    if isinstance(obj, dict):
                        obj[key] = traced
                    else:
                        setattr(obj, key, traced)
                except (AttributeError, TypeError) as exc:
                    logger.debug("Cannot trace %s: %s", full_name, exc)
                    continue
                wrapped += 1
            elif isinstance(value, dict) or (
                hasattr(value, "__dict__") and not callable(value) and not inspect.ismodule(value)
            ):
                wrapped += self._trace_members(value, full_name, unit_id_map, seen)
        return wrapped


# ---------------------------------------------------------------------------
# Process-wide default tracer
# ---------------------------------------------------------------------------

default_tracer = CallTracer()


def trace_fn(fn: Callable[..., Any], name: Optional[str] = None, unit_id: Optional[str] = None) -> Callable[..., Any]:
    return default_tracer.trace_fn(fn, name, unit_id)


def trace_object(obj: Any, prefix: str = "", unit_id_map: Optional[Mapping[str, str]] = None) -> int:
    return default_tracer.trace_object(obj, prefix, unit_id_map)


def get_trace_log() -> TraceLog:
    return default_tracer.log


def clear_trace_log() -> None:
    default_tracer.log.clear()


def reset() -> None:
    """Drop all recorded events and detach the current context's call chain."""
    default_tracer.log.clear()
    _call_chain.set(())
