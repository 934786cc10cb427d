"""Aggregate runtime call traces into dynamic relationships on stored units."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from . import config
from .errors import PersistenceError
from .models import CallStart, DynamicRelationship, Unit, UpdateResult
from .storage import UnitStore
from .tracer import TraceEvent, TraceLog, get_trace_log

logger = logging.getLogger(__name__)

RUNTIME_CONTEXT = "runtime call"


def aggregate_calls(events: Sequence[TraceEvent]) -> Counter:
    """Count ``(caller_unit_id, callee_unit_id)`` pairs among call starts.

    The caller unit comes from the event itself or, for events recorded
    without it, from the parent ``CallStart`` in the same batch.  Calls whose
    caller or callee unit is unknown are not counted.
    """
    starts: Dict[str, CallStart] = {e.id: e for e in events if isinstance(e, CallStart)}
    counts: Counter = Counter()
    for event in starts.values():
        if not event.unit_id or not event.parent_id:
            continue
        caller = event.parent_unit_id
        if caller is None:
            parent = starts.get(event.parent_id)
            caller = parent.unit_id if parent else None
        if caller:
            counts[(caller, event.unit_id)] += 1
    return counts


def merge_relationships(unit: Unit, targets: Dict[str, int], timestamp: str) -> None:
    """Accumulate call counts into ``unit.dynamic_relationships``."""
    existing = {rel.target_id: rel for rel in unit.dynamic_relationships}
    for target_id, frequency in targets.items():
        rel = existing.get(target_id)
        if rel is None:
            rel = DynamicRelationship(target_id=target_id, frequency=0, context=RUNTIME_CONTEXT)
            unit.dynamic_relationships.append(rel)
            existing[target_id] = rel
        rel.frequency += frequency
        rel.last_updated = timestamp


class RelationshipUpdater:
    """Consume the trace log in batches and persist dynamic relationships.

    Only one cycle runs at a time; a cycle requested while another is in
    flight is skipped rather than queued.  Consumed events are discarded only
    after the updated units are persisted, so a failed write leaves them in
    the log for the next cycle.  Retention is all-or-nothing: when a write
    fails part way, the chunks already committed keep their new frequencies
    and the retained events add the same counts again on the next cycle.
    Over-counting is preferred to losing observed calls.
    """

    def __init__(self, store: UnitStore, trace_log: Optional[TraceLog] = None) -> None:
        self.store = store
        self.trace_log = trace_log if trace_log is not None else get_trace_log()
        self._in_flight = threading.Lock()

    def run_cycle(self) -> Optional[UpdateResult]:
        if not self._in_flight.acquire(blocking=False):
            logger.debug("Relationship update already in flight; skipping cycle")
            return None
        try:
            return self._update()
        finally:
            self._in_flight.release()

    def _update(self) -> UpdateResult:
        events = self.trace_log.snapshot()
        if not events:
            return UpdateResult(updated=0, events_consumed=0)

        counts = aggregate_calls(events)
        by_source: Dict[str, Dict[str, int]] = {}
        for (source_id, target_id), frequency in counts.items():
            by_source.setdefault(source_id, {})[target_id] = frequency

        timestamp = datetime.now(timezone.utc).isoformat()
        updated: List[Unit] = []
        for unit in self.store.get_units(sorted(by_source)):
            merge_relationships(unit, by_source[unit.id], timestamp)
            updated.append(unit)
        skipped = set(by_source) - {u.id for u in updated}
        if skipped:
            logger.debug("Ignoring calls from %d unknown units: %s", len(skipped), ", ".join(sorted(skipped)))

        if updated:
            try:
                self.store.put_units(updated)
            except PersistenceError:
                logger.warning("Keeping %d trace events after a failed relationship update", len(events))
                raise

        self.trace_log.discard(len(events))
        logger.info("Updated dynamic relationships of %d units from %d trace events", len(updated), len(events))
        return UpdateResult(updated=len(updated), events_consumed=len(events))


class PeriodicUpdateHandle:
    """Handle to a background update loop; :meth:`stop` ends it."""

    def __init__(self, updater: RelationshipUpdater, interval_ms: int) -> None:
        self.updater = updater
        self.interval = interval_ms / 1000.0
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="unitgraph-updater", daemon=True)

    def _run_once(self) -> None:
        try:
            self.updater.run_cycle()
        except Exception as exc:
            logger.error("Periodic relationship update failed: %s", exc)

    def _loop(self) -> None:
        while not self._stopped.wait(self.interval):
            self._run_once()

    def start(self) -> "PeriodicUpdateHandle":
        self._run_once()
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopped.set()
        if self._thread.is_alive():
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stopped.is_set()


def start_periodic_update(
    store: UnitStore,
    interval_ms: Optional[int] = None,
    trace_log: Optional[TraceLog] = None,
) -> PeriodicUpdateHandle:
    """Run one update cycle now, then every ``interval_ms`` on a daemon thread."""
    interval_ms = config.UPDATE_INTERVAL_MS if interval_ms is None else interval_ms
    if interval_ms <= 0:
        raise ValueError("interval_ms must be > 0")
    return PeriodicUpdateHandle(RelationshipUpdater(store, trace_log), interval_ms).start()
