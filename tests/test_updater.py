"""Tests for aggregating traces into dynamic relationships."""

import threading
import time

import pytest

from unitgraph.errors import PersistenceError
from unitgraph.models import CallStart, DynamicRelationship
from unitgraph.storage import UnitStore
from unitgraph.tracer import CallTracer, TraceLog
from unitgraph.updater import RelationshipUpdater, aggregate_calls, merge_relationships, start_periodic_update


def _start(call_id, unit_id, parent_id=None, parent_unit_id=None):
    return CallStart(
        id=call_id, parent_id=parent_id, unit_id=unit_id, name=unit_id or "anon",
        timestamp=0.0, parent_unit_id=parent_unit_id,
    )


@pytest.fixture
def units(store: UnitStore, make_unit):
    caller = make_unit("caller", start_line=1)
    callee = make_unit("callee", start_line=2)
    store.put_units([caller, callee])
    return caller, callee


def _record_calls(log: TraceLog, caller_id: str, callee_id: str, times: int) -> None:
    tracer = CallTracer(log)
    inner = tracer.trace_fn(lambda: None, name="callee", unit_id=callee_id)

    def outer():
        for _ in range(times):
            inner()

    tracer.trace_fn(outer, name="caller", unit_id=caller_id)()


class TestAggregation:
    """Tests for caller/callee counting."""

    def test_counts_pairs(self):
        events = [
            _start("c1", "a"),
            _start("c2", "b", parent_id="c1", parent_unit_id="a"),
            _start("c3", "b", parent_id="c1", parent_unit_id="a"),
        ]
        assert aggregate_calls(events) == {("a", "b"): 2}

    def test_parent_unit_from_batch(self):
        events = [_start("c1", "a"), _start("c2", "b", parent_id="c1")]
        assert aggregate_calls(events) == {("a", "b"): 1}

    def test_unknown_units_skipped(self):
        events = [
            _start("c1", None),
            _start("c2", "b", parent_id="c1"),
            _start("c3", None, parent_id="c2", parent_unit_id="b"),
        ]
        assert aggregate_calls(events) == {}

    def test_merge_accumulates_existing(self, make_unit):
        unit = make_unit("a")
        unit.dynamic_relationships.append(DynamicRelationship(target_id="b", frequency=4))
        merge_relationships(unit, {"b": 2, "c": 1}, "2024-01-01T00:00:00+00:00")

        rels = {r.target_id: r for r in unit.dynamic_relationships}
        assert rels["b"].frequency == 6
        assert rels["c"].frequency == 1
        assert rels["c"].context == "runtime call"
        assert rels["c"].last_updated == "2024-01-01T00:00:00+00:00"


class TestRelationshipUpdater:
    """Tests for update cycles."""

    def test_cycle_persists_and_clears_log(self, store: UnitStore, units):
        caller, callee = units
        log = TraceLog()
        _record_calls(log, caller.id, callee.id, 3)

        result = RelationshipUpdater(store, log).run_cycle()

        assert result.updated == 1
        assert result.events_consumed == 8
        assert len(log) == 0
        rel = store.get_unit(caller.id).dynamic_relationships[0]
        assert (rel.target_id, rel.frequency) == (callee.id, 3)

    def test_frequencies_accumulate_across_cycles(self, store: UnitStore, units):
        caller, callee = units
        log = TraceLog()
        updater = RelationshipUpdater(store, log)
        _record_calls(log, caller.id, callee.id, 2)
        updater.run_cycle()
        _record_calls(log, caller.id, callee.id, 5)
        updater.run_cycle()

        rels = store.get_unit(caller.id).dynamic_relationships
        assert len(rels) == 1
        assert rels[0].frequency == 7

    def test_empty_log(self, store: UnitStore):
        result = RelationshipUpdater(store, TraceLog()).run_cycle()
        assert (result.updated, result.events_consumed) == (0, 0)

    def test_log_retained_on_persistence_failure(self, store: UnitStore, units, monkeypatch):
        caller, callee = units
        log = TraceLog()
        _record_calls(log, caller.id, callee.id, 1)

        def failing_put(_units):
            raise PersistenceError("disk full", committed=0)

        monkeypatch.setattr(store, "put_units", failing_put)
        with pytest.raises(PersistenceError):
            RelationshipUpdater(store, log).run_cycle()

        assert len(log) == 4
        assert store.get_unit(caller.id).dynamic_relationships == []

    def test_partially_committed_batch_counted_again(self, store: UnitStore, units, monkeypatch):
        caller, callee = units
        log = TraceLog()
        _record_calls(log, caller.id, callee.id, 1)
        real_put = store.put_units

        def commit_then_fail(batch):
            real_put(batch)
            raise PersistenceError("connection lost", committed=len(batch))

        monkeypatch.setattr(store, "put_units", commit_then_fail)
        updater = RelationshipUpdater(store, log)
        with pytest.raises(PersistenceError):
            updater.run_cycle()
        assert store.get_unit(caller.id).dynamic_relationships[0].frequency == 1

        monkeypatch.setattr(store, "put_units", real_put)
        updater.run_cycle()

        assert store.get_unit(caller.id).dynamic_relationships[0].frequency == 2
        assert len(log) == 0

    def test_events_recorded_during_cycle_are_kept(self, store: UnitStore, units, monkeypatch):
        caller, callee = units
        log = TraceLog()
        _record_calls(log, caller.id, callee.id, 1)
        real_put = store.put_units

        def put_and_trace(batch):
            _record_calls(log, caller.id, callee.id, 1)
            return real_put(batch)

        monkeypatch.setattr(store, "put_units", put_and_trace)
        RelationshipUpdater(store, log).run_cycle()

        assert len(log) == 4

    def test_overlapping_cycle_is_skipped(self, store: UnitStore, units, monkeypatch):
        caller, callee = units
        log = TraceLog()
        _record_calls(log, caller.id, callee.id, 1)
        updater = RelationshipUpdater(store, log)
        entered = threading.Event()
        release = threading.Event()
        real_put = store.put_units

        def slow_put(batch):
            entered.set()
            release.wait(5)
            return real_put(batch)

        monkeypatch.setattr(store, "put_units", slow_put)
        worker = threading.Thread(target=updater.run_cycle)
        worker.start()
        assert entered.wait(5)

        assert updater.run_cycle() is None

        release.set()
        worker.join(5)
        assert store.get_unit(caller.id).dynamic_relationships[0].frequency == 1


class TestPeriodicUpdate:
    """Tests for the background update loop."""

    def test_runs_eagerly_and_stops(self, store: UnitStore, units):
        caller, callee = units
        log = TraceLog()
        _record_calls(log, caller.id, callee.id, 2)

        handle = start_periodic_update(store, interval_ms=20, trace_log=log)
        try:
            # the first cycle runs before start_periodic_update returns
            assert len(log) == 0
            _record_calls(log, caller.id, callee.id, 1)
            deadline = time.monotonic() + 5
            while len(log) and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            handle.stop(timeout=5)

        assert not handle.running
        assert store.get_unit(caller.id).dynamic_relationships[0].frequency == 3

    def test_invalid_interval(self, store: UnitStore):
        with pytest.raises(ValueError):
            start_periodic_update(store, interval_ms=0, trace_log=TraceLog())
