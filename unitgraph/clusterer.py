"""Size-bounded, connectivity-aware cluster partitioning."""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, List, Optional, Set

from . import config
from .graph_builder import NameIndex
from .models import Cluster, ClusterResult, Unit
from .storage import UnitStore

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "default"


class _Graph:
    """Directed adjacency over static and dynamic relationships."""

    def __init__(self, units: List[Unit]) -> None:
        index = NameIndex(units)
        self.outgoing: Dict[str, Set[str]] = {u.id: set() for u in units}
        self.incoming: Dict[str, Set[str]] = {u.id: set() for u in units}
        for unit in units:
            targets = index.resolve_dependencies(unit)
            targets += [
                rel.target_id for rel in unit.dynamic_relationships
                if rel.target_id in self.outgoing and rel.target_id != unit.id
            ]
            for target in targets:
                self.outgoing[unit.id].add(target)
                self.incoming[target].add(unit.id)

    def degree(self, unit_id: str, pool: Set[str]) -> int:
        return len(self.outgoing[unit_id] & pool) + len(self.incoming[unit_id] & pool)

    def neighbors(self, unit_id: str) -> Set[str]:
        return self.outgoing[unit_id] | self.incoming[unit_id]


def name_prefix(name: str) -> str:
    """Substring before the first dot, or the default bucket."""
    dot = name.find(".")
    return name[:dot] if dot > 0 else DEFAULT_PREFIX


def partition(units: List[Unit], max_size: int) -> List[Cluster]:
    """Partition ``units`` into clusters whose code size stays within ``max_size``.

    Buckets are processed in prefix order.  An oversized bucket is split
    greedily: the remaining unit with the highest degree inside the bucket
    seeds a cluster (ties go to the lowest unit id), which then grows
    breadth-first over neighbors in ascending id order, admitting a neighbor
    only while the running total stays within the bound.  A unit larger than
    the bound on its own becomes a singleton cluster.
    """
    graph = _Graph(units)
    sizes = {u.id: u.code_size for u in units}
    buckets: Dict[str, List[str]] = {}
    for unit in units:
        buckets.setdefault(name_prefix(unit.name), []).append(unit.id)

    clusters: List[Cluster] = []

    def _new_cluster(prefix: str, members: List[str], total: int, split: bool = False) -> None:
        cluster_id = f"cluster_{len(clusters) + 1}"
        clusters.append(Cluster(
            id=cluster_id,
            name=f"{prefix}_{cluster_id}" if split else prefix,
            unit_ids=members,
            total_size=total,
            max_size=max_size,
        ))

    for prefix in sorted(buckets):
        member_ids = sorted(buckets[prefix])
        total = sum(sizes[i] for i in member_ids)
        if total <= max_size:
            _new_cluster(prefix, member_ids, total)
            continue

        remaining = set(member_ids)
        while remaining:
            seed = min(remaining, key=lambda uid: (-graph.degree(uid, remaining), uid))
            remaining.discard(seed)
            members = [seed]
            size = sizes[seed]

            queue = deque(sorted(graph.neighbors(seed) & remaining))
            queued = set(queue)
            while queue and size < max_size:
                candidate = queue.popleft()
                if candidate not in remaining or size + sizes[candidate] > max_size:
                    continue
                members.append(candidate)
                remaining.discard(candidate)
                size += sizes[candidate]
                for neighbor in sorted(graph.neighbors(candidate) & remaining):
                    if neighbor not in queued:
                        queued.add(neighbor)
                        queue.append(neighbor)

            _new_cluster(prefix, members, size, split=True)
            if size > max_size:
                logger.debug("Unit %s exceeds the cluster bound on its own (%d > %d)", seed, size, max_size)

    return clusters


def cluster_units(store: UnitStore, max_size: Optional[int] = None) -> ClusterResult:
    """Partition every stored unit and persist the resulting cluster ids.

    Raises:
        PersistenceError: a store chunk failed; earlier chunks stay committed.
    """
    max_size = config.CLUSTER_MAX_SIZE if max_size is None else max_size
    if max_size < 1:
        raise ValueError("max_size must be >= 1")

    units = store.get_all_units()
    if not units:
        logger.warning("No units to cluster")
        return ClusterResult(clusters=0, units_updated=0)

    clusters = partition(units, max_size)
    by_id = {u.id: u for u in units}
    updated: List[Unit] = []
    for cluster in clusters:
        for unit_id in cluster.unit_ids:
            unit = by_id[unit_id]
            unit.cluster_id = cluster.id
            updated.append(unit)

    store.put_units(updated)
    store.replace_clusters(clusters)
    logger.info("Clustered %d units into %d clusters (bound %d)", len(updated), len(clusters), max_size)
    return ClusterResult(clusters=len(clusters), units_updated=len(updated))
