"""Tests for size-bounded cluster partitioning."""

import pytest

from unitgraph.clusterer import cluster_units, name_prefix, partition
from unitgraph.ingest import ingest_source
from unitgraph.models import DynamicRelationship
from unitgraph.storage import UnitStore


def _sized(make_unit, name, size, deps=None, start_line=1):
    return make_unit(name, code="x" * size, deps=deps, start_line=start_line)


class TestNamePrefix:
    def test_prefix_before_first_dot(self):
        assert name_prefix("ui.button.render") == "ui"

    def test_undotted_names_share_default_bucket(self):
        assert name_prefix("render") == "default"


class TestPartition:
    """Tests for the partitioning algorithm."""

    def test_bucket_within_bound_is_one_cluster(self, make_unit):
        units = [_sized(make_unit, "a", 10), _sized(make_unit, "b", 10, start_line=2)]
        clusters = partition(units, max_size=100)

        assert len(clusters) == 1
        assert clusters[0].name == "default"
        assert clusters[0].total_size == 20

    def test_prefixes_form_separate_clusters(self, make_unit):
        units = [
            _sized(make_unit, "ui.a", 10),
            _sized(make_unit, "db.b", 10, start_line=2),
            _sized(make_unit, "plain", 10, start_line=3),
        ]
        clusters = partition(units, max_size=100)

        assert [c.name for c in clusters] == ["db", "default", "ui"]
        assert [c.id for c in clusters] == ["cluster_1", "cluster_2", "cluster_3"]

    def test_oversized_bucket_respects_bound(self, make_unit):
        units = [_sized(make_unit, f"u{n}", 40, start_line=n) for n in range(6)]
        clusters = partition(units, max_size=100)

        assert all(c.total_size <= 100 for c in clusters)
        assert sorted(uid for c in clusters for uid in c.unit_ids) == sorted(u.id for u in units)
        assert all(c.name.startswith("default_cluster_") for c in clusters)

    def test_connected_units_grouped_together(self, make_unit):
        hub = _sized(make_unit, "hub", 30, deps=["leaf1", "leaf2"], start_line=1)
        leaf1 = _sized(make_unit, "leaf1", 30, start_line=2)
        leaf2 = _sized(make_unit, "leaf2", 30, start_line=3)
        loner = _sized(make_unit, "loner", 30, start_line=4)
        clusters = partition([hub, leaf1, leaf2, loner], max_size=90)

        first = clusters[0]
        assert first.unit_ids[0] == hub.id
        assert set(first.unit_ids) == {hub.id, leaf1.id, leaf2.id}
        assert clusters[1].unit_ids == [loner.id]

    def test_dynamic_relationships_count_as_edges(self, make_unit):
        a = _sized(make_unit, "a", 50, start_line=1)
        b = _sized(make_unit, "b", 50, start_line=2)
        c = _sized(make_unit, "c", 50, start_line=3)
        c.dynamic_relationships.append(DynamicRelationship(target_id=a.id, frequency=2))
        clusters = partition([a, b, c], max_size=100)

        grouped = [set(cl.unit_ids) for cl in clusters]
        assert {a.id, c.id} in grouped

    def test_oversized_unit_is_singleton(self, make_unit):
        big = _sized(make_unit, "big", 500)
        small = _sized(make_unit, "small", 10, start_line=2)
        clusters = partition([big, small], max_size=100)

        singleton = next(c for c in clusters if big.id in c.unit_ids)
        assert singleton.unit_ids == [big.id]
        assert singleton.oversized

    def test_partition_is_deterministic(self, make_unit):
        units = [_sized(make_unit, f"u{n}", 35, deps=[f"u{n + 1}"], start_line=n) for n in range(8)]
        first = [c.unit_ids for c in partition(units, max_size=100)]
        second = [c.unit_ids for c in partition(list(reversed(units)), max_size=100)]
        assert first == second


class TestClusterUnits:
    """Tests for clustering stored units."""

    def test_cluster_ids_persisted(self, store: UnitStore, sample_js_source: str):
        ingest_source(store, sample_js_source, "sample.js", max_workers=1)
        result = cluster_units(store, max_size=5000)

        assert result.clusters == 1
        assert result.units_updated == 5
        assert {u.cluster_id for u in store.get_all_units()} == {"cluster_1"}
        assert len(store.get_cluster("cluster_1").unit_ids) == 5

    def test_reclustering_unchanged_graph_is_stable(self, store: UnitStore, sample_js_source: str):
        ingest_source(store, sample_js_source, "sample.js", max_workers=1)
        cluster_units(store, max_size=120)
        first = {u.id: u.cluster_id for u in store.get_all_units()}
        cluster_units(store, max_size=120)
        assert {u.id: u.cluster_id for u in store.get_all_units()} == first

    def test_empty_store(self, store: UnitStore):
        result = cluster_units(store)
        assert (result.clusters, result.units_updated) == (0, 0)

    def test_invalid_bound(self, store: UnitStore):
        with pytest.raises(ValueError):
            cluster_units(store, max_size=0)
