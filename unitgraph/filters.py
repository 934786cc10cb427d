"""Structured unit queries for ``findUnits``.

A structured query is a mapping of recognised keys to values.  Each key
parses into one predicate type and a unit matches a query when it satisfies
every predicate.  Keys whose value is ``None`` or a blank string are ignored;
unknown keys are rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import singledispatch
from typing import Any, Callable, Dict, List, Mapping, Set, Union

from .errors import ValidationError
from .graph_builder import NameIndex
from .models import Unit


@dataclass(frozen=True)
class IdIs:
    value: str


@dataclass(frozen=True)
class NameContains:
    value: str


@dataclass(frozen=True)
class CodeContains:
    value: str


@dataclass(frozen=True)
class DescriptionContains:
    value: str


@dataclass(frozen=True)
class OfType:
    value: str


@dataclass(frozen=True)
class MemberOfCluster:
    value: str


@dataclass(frozen=True)
class DependsOn:
    value: str


@dataclass(frozen=True)
class DependencyOf:
    value: str


@dataclass(frozen=True)
class HasTests:
    value: bool


@dataclass(frozen=True)
class OriginalSource:
    value: str


Predicate = Union[
    IdIs, NameContains, CodeContains, DescriptionContains, OfType,
    MemberOfCluster, DependsOn, DependencyOf, HasTests, OriginalSource,
]


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


QUERY_KEYS: Dict[str, Callable[[Any], Predicate]] = {
    "id": lambda v: IdIs(str(v)),
    "nameContains": lambda v: NameContains(str(v)),
    "codeContains": lambda v: CodeContains(str(v)),
    "descriptionContains": lambda v: DescriptionContains(str(v)),
    "ofType": lambda v: OfType(str(v)),
    "memberOfCluster": lambda v: MemberOfCluster(str(v)),
    "dependsOn": lambda v: DependsOn(str(v)),
    "dependencyOf": lambda v: DependencyOf(str(v)),
    "hasTests": lambda v: HasTests(_as_bool(v)),
    "originalSource": lambda v: OriginalSource(str(v)),
}


def parse_query(query: Mapping[str, Any]) -> List[Predicate]:
    """Turn a structured query into predicates.

    Raises:
        ValidationError: the query holds a key outside :data:`QUERY_KEYS`.
    """
    unknown = sorted(k for k in query if k not in QUERY_KEYS)
    if unknown:
        raise ValidationError(
            f"Unknown filter key(s): {', '.join(unknown)}",
            context={"allowed": sorted(QUERY_KEYS)},
        )
    predicates: List[Predicate] = []
    for key, value in query.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        predicates.append(QUERY_KEYS[key](value))
    return predicates


class QueryContext:
    """Corpus-wide lookups shared by the predicates of one query."""

    def __init__(self, units: List[Unit]) -> None:
        self.units = units
        self.by_id = {u.id: u for u in units}
        self.index = NameIndex(units)
        self._edges: Dict[str, Set[str]] = {}

    def targets_of(self, unit: Unit) -> Set[str]:
        """Ids ``unit`` depends on, statically resolved or observed at runtime."""
        if unit.id not in self._edges:
            targets = set(self.index.resolve_dependencies(unit))
            targets.update(rel.target_id for rel in unit.dynamic_relationships)
            self._edges[unit.id] = targets
        return self._edges[unit.id]

    def lookup(self, ref: str) -> Set[str]:
        """Ids for ``ref``, taken as a unit id first and as an exact name otherwise."""
        if ref in self.by_id:
            return {ref}
        return {u.id for u in self.units if u.name == ref}


@singledispatch
def matches(predicate: Any, unit: Unit, ctx: QueryContext) -> bool:
    raise TypeError(f"Unsupported predicate: {type(predicate).__name__}")


@matches.register
def _(predicate: IdIs, unit: Unit, ctx: QueryContext) -> bool:
    return unit.id == predicate.value


@matches.register
def _(predicate: NameContains, unit: Unit, ctx: QueryContext) -> bool:
    return predicate.value.lower() in unit.name.lower()


@matches.register
def _(predicate: CodeContains, unit: Unit, ctx: QueryContext) -> bool:
    return predicate.value in unit.code


@matches.register
def _(predicate: DescriptionContains, unit: Unit, ctx: QueryContext) -> bool:
    description = unit.metadata.get("description") or ""
    return predicate.value.lower() in str(description).lower()


@matches.register
def _(predicate: OfType, unit: Unit, ctx: QueryContext) -> bool:
    return unit.kind == predicate.value


@matches.register
def _(predicate: MemberOfCluster, unit: Unit, ctx: QueryContext) -> bool:
    return unit.cluster_id == predicate.value


@matches.register
def _(predicate: DependsOn, unit: Unit, ctx: QueryContext) -> bool:
    return bool(ctx.targets_of(unit) & ctx.lookup(predicate.value))


@matches.register
def _(predicate: DependencyOf, unit: Unit, ctx: QueryContext) -> bool:
    return any(unit.id in ctx.targets_of(ctx.by_id[src]) for src in ctx.lookup(predicate.value))


@matches.register
def _(predicate: HasTests, unit: Unit, ctx: QueryContext) -> bool:
    return bool(unit.metadata.get("tests")) == predicate.value


@matches.register
def _(predicate: OriginalSource, unit: Unit, ctx: QueryContext) -> bool:
    return unit.original_source == predicate.value


def find_units(units: List[Unit], query: Union[str, Mapping[str, Any], None]) -> List[Unit]:
    """Units matching ``query``.

    A plain string matches the name case-insensitively or the code
    case-sensitively; an empty query matches everything.
    """
    if not query:
        return list(units)
    if isinstance(query, str):
        needle = query.lower()
        return [u for u in units if needle in u.name.lower() or query in u.code]
    if not isinstance(query, Mapping):
        raise ValidationError("Query must be a string or a mapping")
    predicates = parse_query(query)
    ctx = QueryContext(units)
    return [u for u in units if all(matches(p, u, ctx) for p in predicates)]
