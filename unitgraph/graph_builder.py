"""Resolve raw call names into static dependency edges.

Names are not unique across a corpus, so resolution follows one explicit
policy instead of "first match wins":

1. a unit's full name or the last segment of a dotted name
   (``utils.format`` answers to ``format``) is a candidate
2. candidates from the same ``original_source`` as the caller win
3. ties break on the lowest ``(start_line, id)``

Self references (recursion) are not emitted as edges.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from .models import Dependency, Unit

logger = logging.getLogger(__name__)


class NameIndex:
    """Name -> candidate units lookup over a set of units."""

    def __init__(self, units: Iterable[Unit]) -> None:
        self._by_name: Dict[str, List[Unit]] = {}
        self._ids = set()
        for unit in units:
            self._ids.add(unit.id)
            self._by_name.setdefault(unit.name, []).append(unit)
            if "." in unit.name:
                short = unit.name.rsplit(".", 1)[1]
                self._by_name.setdefault(short, []).append(unit)
        for candidates in self._by_name.values():
            candidates.sort(key=lambda u: (u.start_line, u.id))

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self._ids

    def resolve(self, name: str, origin: Optional[str] = None) -> Optional[str]:
        """Return the unit id ``name`` refers to from a unit in ``origin``."""
        candidates = self._by_name.get(name)
        if not candidates:
            return None
        if origin is not None:
            for cand in candidates:
                if cand.original_source == origin:
                    chosen = cand
                    break
            else:
                chosen = candidates[0]
        else:
            chosen = candidates[0]
        if len(candidates) > 1:
            logger.debug(
                "Ambiguous name '%s' (%d candidates) resolved to %s",
                name, len(candidates), chosen.id,
            )
        return chosen.id

    def resolve_dependencies(self, unit: Unit) -> List[str]:
        """Resolved target ids of ``unit``'s static references, in reference order."""
        targets: List[str] = []
        for name in unit.static_dependencies:
            target = self.resolve(name, unit.original_source)
            if target is not None and target != unit.id and target not in targets:
                targets.append(target)
        return targets


def build_static_edges(units: List[Unit], index: Optional[NameIndex] = None) -> List[Dependency]:
    """Emit one static edge per resolved reference, unique by (source, target, type)."""
    index = index or NameIndex(units)
    edges: List[Dependency] = []
    seen = set()
    for unit in units:
        for target in index.resolve_dependencies(unit):
            edge = Dependency(source_id=unit.id, target_id=target, type="static")
            if edge not in seen:
                seen.add(edge)
                edges.append(edge)
    return edges
