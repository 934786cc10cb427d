"""Tests for dependency resolution, ordering and bundle execution."""

import logging

import pytest
from py_mini_racer import JSEvalException

from unitgraph.errors import NotFoundError, ValidationError
from unitgraph.ingest import ingest_source
from unitgraph.loader import (
    BundleExecutor,
    assemble_bundle,
    concatenate_code,
    load_and_execute,
    resolve_dependencies,
    topological_sort,
)
from unitgraph.models import DynamicRelationship
from unitgraph.storage import UnitStore


ASYNC_CLASS = """class Api {
  async load() {
    return await Promise.resolve(1);
  }
  *ids() {
    yield 1;
  }
  async *stream() {
    yield 2;
  }
}
function run() {
  load();
  stream();
  return Array.from(ids()).length;
}
"""

DOTTED_UTILS = """utils.double = function (x) { return x * 2; };
utils.triple = (x) => { return x * 3; };
function main() {
  return utils.double(1) + utils.triple(2);
}
"""


@pytest.fixture
def sample_store(store: UnitStore, sample_js_source: str) -> UnitStore:
    ingest_source(store, sample_js_source, "sample.js", max_workers=1)
    return store


class TestResolveDependencies:
    """Tests for transitive closure over static and hot runtime edges."""

    def test_static_closure(self, store: UnitStore, make_unit):
        a = make_unit("a", deps=["b"], start_line=1)
        b = make_unit("b", deps=["c"], start_line=2)
        c = make_unit("c", start_line=3)
        unrelated = make_unit("d", start_line=4)
        store.put_units([a, b, c, unrelated])

        assert resolve_dependencies(store, [a.id]) == [a.id, b.id, c.id]

    def test_only_hot_dynamic_edges(self, store: UnitStore, make_unit):
        a = make_unit("a", start_line=1)
        hot = make_unit("hot", start_line=2)
        cold = make_unit("cold", start_line=3)
        a.dynamic_relationships = [
            DynamicRelationship(target_id=hot.id, frequency=6),
            DynamicRelationship(target_id=cold.id, frequency=5),
        ]
        store.put_units([a, hot, cold])

        assert resolve_dependencies(store, [a.id], hot_threshold=5) == [a.id, hot.id]

    def test_cycles_terminate(self, store: UnitStore, make_unit):
        a = make_unit("a", deps=["b"], start_line=1)
        b = make_unit("b", deps=["a"], start_line=2)
        store.put_units([a, b])
        assert set(resolve_dependencies(store, [a.id])) == {a.id, b.id}

    def test_empty_entries_rejected(self, store: UnitStore):
        with pytest.raises(ValidationError):
            resolve_dependencies(store, [])

    def test_unknown_entry(self, store: UnitStore):
        with pytest.raises(NotFoundError):
            resolve_dependencies(store, ["nope"])


class TestTopologicalSort:
    """Tests for dependency ordering."""

    def test_dependencies_come_first(self, store: UnitStore, make_unit):
        a = make_unit("a", deps=["b", "c"], start_line=1)
        b = make_unit("b", deps=["c"], start_line=2)
        c = make_unit("c", start_line=3)
        store.put_units([a, b, c])

        plan = topological_sort(store, [a.id, b.id, c.id])
        assert plan.order == [c.id, b.id, a.id]
        assert plan.cycles == []

    def test_cycle_logged_and_ordered(self, store: UnitStore, make_unit, caplog):
        a = make_unit("a", deps=["b"], start_line=1)
        b = make_unit("b", deps=["a"], start_line=2)
        store.put_units([a, b])

        with caplog.at_level(logging.WARNING, logger="unitgraph.loader"):
            plan = topological_sort(store, [a.id, b.id])

        assert sorted(plan.order) == sorted([a.id, b.id])
        assert plan.order == [b.id, a.id]
        assert plan.cycles == [[a.id, b.id]]
        assert "Circular dependency" in caplog.text

    def test_order_ignores_units_outside_set(self, store: UnitStore, make_unit):
        a = make_unit("a", deps=["b"], start_line=1)
        b = make_unit("b", start_line=2)
        store.put_units([a, b])
        assert topological_sort(store, [a.id]).order == [a.id]


class TestAssembly:
    """Tests for bundle assembly."""

    def test_concatenate_adds_provenance(self, sample_store: UnitStore):
        code = concatenate_code(sample_store, ["sample.js:add:2"])
        assert "// add (sample.js:add:2) from sample.js" in code
        assert "function add(a, b)" in code

    def test_method_units_become_functions(self, sample_store: UnitStore):
        code = concatenate_code(sample_store, ["sample.js:total:13"])
        assert "function total(values)" in code

    def test_assemble_bundle_order(self, sample_store: UnitStore):
        plan, code = assemble_bundle(sample_store, ["sample.js:main:20"])
        assert plan.order == ["sample.js:add:2", "sample.js:main:20"]
        assert code.index("function add") < code.index("function main")


class TestBundleExecutor:
    """Tests for isolated bundle evaluation."""

    def test_expression_result(self):
        outcome = BundleExecutor().execute("var x = 20;", invocation="x + 1")
        assert outcome.result == 21

    def test_context_injected(self):
        outcome = BundleExecutor().execute("", context={"args": {"n": 3}}, invocation="args.n * 2")
        assert outcome.result == 6

    def test_console_captured(self):
        outcome = BundleExecutor().execute("console.log('hi', 2); console.warn('careful');")
        assert outcome.result is None
        assert outcome.logs == [
            {"type": "log", "args": ["hi", "2"]},
            {"type": "warn", "args": ["careful"]},
        ]

    def test_state_does_not_leak_between_runs(self):
        executor = BundleExecutor()
        executor.execute("globalThis.leak = 1;")
        outcome = executor.execute("", invocation="typeof leak")
        assert outcome.result == "undefined"

    def test_errors_propagate(self):
        with pytest.raises(JSEvalException):
            BundleExecutor().execute("throw new Error('boom');")

    @pytest.mark.parametrize("key", ["not-valid", "console", "1abc"])
    def test_invalid_context_names(self, key):
        with pytest.raises(ValidationError):
            BundleExecutor.wrap("", {key: 1})

    def test_unserialisable_context(self):
        with pytest.raises(ValidationError):
            BundleExecutor.wrap("", {"x": object()})


class TestLoadAndExecute:
    """End-to-end resolution, ordering and evaluation."""

    def test_main_returns_two(self, sample_store: UnitStore):
        outcome = load_and_execute(sample_store, ["sample.js:main:20"], invocation="main()")
        assert outcome.result == 2
        assert outcome.logs == [{"type": "log", "args": ["main } called"]}]

    def test_arrow_entry_with_args(self, sample_store: UnitStore):
        outcome = load_and_execute(
            sample_store, ["sample.js:double:6"], context={"args": 4}, invocation="double(args)"
        )
        assert outcome.result == 8

    def test_method_entry(self, sample_store: UnitStore):
        outcome = load_and_execute(sample_store, ["sample.js:total:13"], invocation="total([1, 2, 3])")
        assert outcome.result == 6

    def test_async_and_generator_methods(self, store: UnitStore):
        ingest_source(store, ASYNC_CLASS, "api.js", max_workers=1)

        code = concatenate_code(store, ["api.js:load:2", "api.js:ids:5", "api.js:stream:8"])
        assert "async function load()" in code
        assert "function* ids()" in code
        assert "async function* stream()" in code

        outcome = load_and_execute(store, ["api.js:run:12"], invocation="run()")
        assert outcome.result == 1

    def test_dotted_assignment_receiver_declared(self, store: UnitStore):
        ingest_source(store, DOTTED_UTILS, "utils.js", max_workers=1)

        _, code = assemble_bundle(store, ["utils.js:main:3"])
        assert code.count("var utils = utils || {};") == 1
        assert code.index("var utils") < code.index("utils.double =")

        outcome = load_and_execute(store, ["utils.js:main:3"], invocation="main()")
        assert outcome.result == 8
