"""Dependency resolution, ordering, assembly and execution of unit bundles."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from py_mini_racer import MiniRacer

from . import config
from .errors import NotFoundError, ValidationError
from .graph_builder import NameIndex
from .models import ExecutionOutcome, OrderPlan, Unit
from .storage import UnitStore

logger = logging.getLogger(__name__)

_JS_IDENTIFIER = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")
_RESERVED_CONTEXT_KEYS = {"console", "__logs", "__console", "__result"}
_PROPERTY_PREFIX = re.compile(r"^([A-Za-z_$][A-Za-z0-9_$]*)\s*:\s*")
_METHOD_HEAD = re.compile(r"^(async\s+)?(\*\s*)?")
_DOTTED_RECEIVER = re.compile(r"^([A-Za-z_$][A-Za-z0-9_$]*)\.")

_IN_PROGRESS = 1
_DONE = 2


def resolve_dependencies(
    store: UnitStore,
    entry_ids: Sequence[str],
    hot_threshold: Optional[int] = None,
    index: Optional[NameIndex] = None,
) -> List[str]:
    """Return the ids needed to run ``entry_ids``, in discovery order.

    The required set grows from the entries until a fixed point: every static
    reference (resolved against the full corpus, not only the units fetched
    so far) and every dynamic relationship whose frequency exceeds
    ``hot_threshold`` is pulled in.

    Raises:
        ValidationError: ``entry_ids`` is empty.
        NotFoundError:   an entry id is not in the store.
    """
    if not entry_ids:
        raise ValidationError("No entry points provided")
    hot_threshold = config.HOT_FREQUENCY_THRESHOLD if hot_threshold is None else hot_threshold
    index = index or NameIndex(store.get_all_units())
    missing = [uid for uid in entry_ids if uid not in index]
    if missing:
        raise NotFoundError(f"Unit not found: {', '.join(missing)}", context={"ids": missing})

    required: Dict[str, None] = dict.fromkeys(entry_ids)
    processed: Set[str] = set()
    while True:
        unprocessed = [uid for uid in required if uid not in processed]
        if not unprocessed:
            break
        units = store.get_units(unprocessed)
        processed.update(unprocessed)
        for unit in units:
            for target in index.resolve_dependencies(unit):
                required.setdefault(target, None)
            for rel in unit.dynamic_relationships:
                if rel.frequency > hot_threshold and rel.target_id in index:
                    required.setdefault(rel.target_id, None)
    return list(required)


def topological_sort(
    store: UnitStore,
    unit_ids: Sequence[str],
    index: Optional[NameIndex] = None,
) -> OrderPlan:
    """Order ``unit_ids`` so that static dependencies come before their callers.

    Depth-first over static edges restricted to ``unit_ids``, visiting roots
    and neighbors in ascending id order.  Reaching a node that is still in
    progress means a cycle: it is recorded and logged, and the walk moves on
    without waiting for that node, so the lowest-id member of a cycle entered
    first is placed after the rest of the cycle.
    """
    index = index or NameIndex(store.get_all_units())
    units = store.get_units(unit_ids)
    required = {u.id for u in units}
    graph: Dict[str, List[str]] = {
        u.id: sorted(t for t in index.resolve_dependencies(u) if t in required)
        for u in units
    }

    state: Dict[str, int] = {}
    order: List[str] = []
    cycles: List[List[str]] = []

    for root in sorted(graph):
        if root in state:
            continue
        state[root] = _IN_PROGRESS
        path = [root]
        stack: List[Tuple[str, Iterator[str]]] = [(root, iter(graph[root]))]
        while stack:
            node, deps = stack[-1]
            for dep in deps:
                mark = state.get(dep)
                if mark is None:
                    state[dep] = _IN_PROGRESS
                    path.append(dep)
                    stack.append((dep, iter(graph[dep])))
                    break
                if mark == _IN_PROGRESS:
                    cycle = path[path.index(dep):]
                    cycles.append(cycle)
                    logger.warning("Circular dependency detected: %s", " -> ".join(cycle + [dep]))
            else:
                stack.pop()
                path.pop()
                state[node] = _DONE
                order.append(node)

    return OrderPlan(order=order, cycles=cycles)


def _bundle_source(unit: Unit) -> str:
    # method-style definitions and object-literal members are not valid
    # top-level script on their own
    if unit.kind == "method":
        head = _METHOD_HEAD.match(unit.code)
        is_async, is_generator = head.group(1), head.group(2)
        return f"{'async ' if is_async else ''}function{'*' if is_generator else ''} {unit.code[head.end():]}"
    member = _PROPERTY_PREFIX.match(unit.code)
    if member:
        return f"var {member.group(1)} = {unit.code[member.end():]}"
    return unit.code


def concatenate_code(store: UnitStore, ordered_ids: Sequence[str]) -> str:
    """Join unit sources in order, each behind a provenance comment."""
    units = {u.id: u for u in store.get_units(ordered_ids)}
    parts: List[str] = []
    # receivers defined by a bundled unit of their own need no placeholder
    declared: Set[str] = {u.name for u in units.values() if "." not in u.name}
    for unit_id in ordered_ids:
        unit = units.get(unit_id)
        if unit is None or not unit.code:
            continue
        receivers = _receiver_declarations(unit, declared)
        parts.append(f"\n\n// {unit.name} ({unit.id}) from {unit.original_source}\n{receivers}{_bundle_source(unit)}")
    return "".join(parts)


def _receiver_declarations(unit: Unit, declared: Set[str]) -> str:
    """Declare the objects a dotted assignment such as ``utils.fmt = ...`` writes into.

    Each receiver path is declared once per bundle, ahead of its first use.
    """
    if "." not in unit.name or not _DOTTED_RECEIVER.match(unit.code):
        return ""
    segments = unit.name.split(".")[:-1]
    if segments[0] == "this":
        return ""
    lines = []
    for depth in range(1, len(segments) + 1):
        path = ".".join(segments[:depth])
        if path in declared:
            continue
        declared.add(path)
        lines.append(f"var {path} = {path} || {{}};" if depth == 1 else f"{path} = {path} || {{}};")
    return "".join(line + "\n" for line in lines)


class BundleExecutor:
    """Evaluate assembled bundles in a fresh, isolated V8 context.

    Each call builds a new :class:`~py_mini_racer.MiniRacer` isolate, so no
    state survives between executions.  The bundle only sees the injected
    ``context`` (JSON-serialisable values bound as parameters of the
    wrapping function) and a ``console`` whose output is captured into
    :attr:`ExecutionOutcome.logs`.  JavaScript errors propagate unmodified.
    """

    def __init__(self, timeout_ms: Optional[int] = None) -> None:
        self.timeout_ms = config.EXECUTION_TIMEOUT_MS if timeout_ms is None else timeout_ms

    @staticmethod
    def wrap(code: str, context: Optional[Dict[str, Any]] = None, invocation: Optional[str] = None) -> str:
        context = context or {}
        keys = list(context)
        for key in keys:
            if not _JS_IDENTIFIER.match(key) or key in _RESERVED_CONTEXT_KEYS:
                raise ValidationError(f"Invalid context name: {key!r}")
        try:
            values = [json.dumps(context[key]) for key in keys]
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Context values must be JSON-serialisable: {exc}") from exc

        params = ", ".join(["console"] + keys)
        args = ", ".join(["__console"] + values)
        tail = f"\nreturn ({invocation});" if invocation else ""
        return (
            "(function () {\n"
            "  var __logs = [];\n"
            "  var __console = {};\n"
            "  ['log', 'info', 'warn', 'error', 'debug'].forEach(function (level) {\n"
            "    __console[level] = function () {\n"
            "      __logs.push({type: level, args: Array.prototype.slice.call(arguments).map(function (a) {\n"
            "        try { return typeof a === 'string' ? a : JSON.stringify(a); } catch (e) { return String(a); }\n"
            "      })});\n"
            "    };\n"
            "  });\n"
            f"  var __result = (function ({params}) {{{code}{tail}\n}})({args});\n"
            "  return JSON.stringify({result: __result === undefined ? null : __result, logs: __logs});\n"
            "})()"
        )

    def execute(
        self,
        code: str,
        context: Optional[Dict[str, Any]] = None,
        invocation: Optional[str] = None,
    ) -> ExecutionOutcome:
        script = self.wrap(code, context, invocation)
        ctx = MiniRacer()
        try:
            if self.timeout_ms is None:
                raw = ctx.eval(script)
            else:
                raw = ctx.eval(script, timeout_sec=self.timeout_ms / 1000.0)
        finally:
            ctx.close()
        payload = json.loads(raw)
        return ExecutionOutcome(result=payload.get("result"), logs=payload.get("logs", []))


def assemble_bundle(store: UnitStore, entry_ids: Sequence[str]) -> Tuple[OrderPlan, str]:
    """Resolve, order and concatenate the bundle for ``entry_ids``."""
    index = NameIndex(store.get_all_units())
    required = resolve_dependencies(store, entry_ids, index=index)
    plan = topological_sort(store, required, index=index)
    return plan, concatenate_code(store, plan.order)


def load_and_execute(
    store: UnitStore,
    entry_ids: Sequence[str],
    context: Optional[Dict[str, Any]] = None,
    invocation: Optional[str] = None,
    executor: Optional[BundleExecutor] = None,
) -> ExecutionOutcome:
    """Assemble the bundle for ``entry_ids`` and evaluate it."""
    plan, code = assemble_bundle(store, entry_ids)
    logger.debug("Executing bundle of %d units for %s", len(plan.order), ", ".join(entry_ids))
    return (executor or BundleExecutor()).execute(code, context, invocation)
