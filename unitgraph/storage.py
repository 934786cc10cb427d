"""Persistence layer for units, dependency edges and clusters.

Units are stored as JSON documents keyed by unit id, with a secondary index
on ``cluster_id``.  Dependency edges are unique on
``(source_id, target_id, type)`` so merging is an idempotent upsert.

Batch writes are chunk-atomic: every chunk commits in its own transaction or
rolls back and raises :class:`~unitgraph.errors.PersistenceError`.  Chunks
committed before a failure stay committed.

The store assumes a single writer.  Access to the connection is serialised
with a lock, but read-modify-write sequences (clustering, relationship
updates) are not transactional across calls, so concurrent writers can lose
updates to ``cluster_id`` or ``dynamic_relationships``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Union

from . import config
from .errors import PersistenceError
from .models import Cluster, Dependency, Unit

logger = logging.getLogger(__name__)

_READ_CHUNK = 500


class UnitStore:
    """SQLite-backed document store for units and their relationships."""

    def __init__(self, db_path: Union[Path, str], chunk_size: Optional[int] = None) -> None:
        self.db_path = Path(db_path)
        self.chunk_size = chunk_size or config.BATCH_CHUNK_SIZE
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def __enter__(self) -> "UnitStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        with self._lock, self.conn:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS units (
                    id              TEXT PRIMARY KEY,
                    name            TEXT NOT NULL,
                    kind            TEXT NOT NULL,
                    cluster_id      TEXT,
                    original_source TEXT NOT NULL,
                    doc             TEXT NOT NULL
                )
            """)
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS dependencies (
                    id        TEXT PRIMARY KEY,
                    source_id TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    type      TEXT NOT NULL,
                    UNIQUE (source_id, target_id, type)
                )
            """)
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS clusters (
                    id         TEXT PRIMARY KEY,
                    name       TEXT NOT NULL,
                    unit_ids   TEXT NOT NULL,
                    total_size INTEGER NOT NULL,
                    max_size   INTEGER NOT NULL
                )
            """)
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_units_cluster ON units(cluster_id)")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_units_name ON units(name)")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_deps_source ON dependencies(source_id)")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_deps_target ON dependencies(target_id)")

    def clear(self) -> None:
        with self._lock, self.conn:
            self.conn.execute("DELETE FROM dependencies")
            self.conn.execute("DELETE FROM units")
            self.conn.execute("DELETE FROM clusters")

    # ------------------------------------------------------------------
    # Chunk-atomic writes
    # ------------------------------------------------------------------

    def _write_chunked(self, sql: str, rows: Sequence[tuple], what: str) -> int:
        committed = 0
        for start in range(0, len(rows), self.chunk_size):
            chunk = rows[start:start + self.chunk_size]
            try:
                with self._lock, self.conn:
                    self.conn.executemany(sql, chunk)
            except sqlite3.Error as exc:
                logger.error(
                    "Writing %s chunk at offset %d failed (%d already committed): %s",
                    what, start, committed, exc,
                )
                raise PersistenceError(
                    f"Failed to write {what}: {exc}",
                    committed=committed,
                    context={"offset": start, "chunk_size": len(chunk)},
                ) from exc
            committed += len(chunk)
        return committed

    def put_units(self, units: Iterable[Unit]) -> int:
        """Insert or replace units; returns the number written."""
        rows = [
            (
                unit.id,
                unit.name,
                unit.kind,
                unit.cluster_id,
                unit.original_source,
                json.dumps(unit.to_dict()),
            )
            for unit in units
        ]
        return self._write_chunked(
            """
            INSERT OR REPLACE INTO units (id, name, kind, cluster_id, original_source, doc)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            rows,
            "units",
        )

    def put_dependencies(self, dependencies: Iterable[Dependency]) -> int:
        """Upsert dependency edges; existing ``(source, target, type)`` rows are kept."""
        rows = [(d.id, d.source_id, d.target_id, d.type) for d in dependencies]
        return self._write_chunked(
            "INSERT OR IGNORE INTO dependencies (id, source_id, target_id, type) VALUES (?, ?, ?, ?)",
            rows,
            "dependencies",
        )

    def replace_outgoing(self, source_id: str, dependencies: Iterable[Dependency], dep_type: str = "static") -> None:
        """Swap the ``dep_type`` edges leaving ``source_id`` in one transaction."""
        rows = [(d.id, d.source_id, d.target_id, d.type) for d in dependencies]
        try:
            with self._lock, self.conn:
                self.conn.execute(
                    "DELETE FROM dependencies WHERE source_id = ? AND type = ?", (source_id, dep_type)
                )
                self.conn.executemany(
                    "INSERT OR IGNORE INTO dependencies (id, source_id, target_id, type) VALUES (?, ?, ?, ?)",
                    rows,
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to write dependencies of {source_id}: {exc}") from exc

    def replace_clusters(self, clusters: Iterable[Cluster]) -> None:
        rows = [
            (c.id, c.name, json.dumps(c.unit_ids), c.total_size, c.max_size)
            for c in clusters
        ]
        try:
            with self._lock, self.conn:
                self.conn.execute("DELETE FROM clusters")
                self.conn.executemany(
                    "INSERT INTO clusters (id, name, unit_ids, total_size, max_size) VALUES (?, ?, ?, ?, ?)",
                    rows,
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to write clusters: {exc}") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def get_unit(self, unit_id: str) -> Optional[Unit]:
        rows = self._query("SELECT doc FROM units WHERE id = ?", (unit_id,))
        return Unit.from_dict(json.loads(rows[0]["doc"])) if rows else None

    def get_units(self, unit_ids: Sequence[str]) -> List[Unit]:
        """Fetch units in the order of ``unit_ids``; unknown ids are skipped."""
        found = {}
        ids = list(dict.fromkeys(unit_ids))
        for start in range(0, len(ids), _READ_CHUNK):
            chunk = ids[start:start + _READ_CHUNK]
            placeholders = ",".join("?" * len(chunk))
            for row in self._query(f"SELECT id, doc FROM units WHERE id IN ({placeholders})", chunk):
                found[row["id"]] = Unit.from_dict(json.loads(row["doc"]))
        return [found[i] for i in ids if i in found]

    def get_all_units(self) -> List[Unit]:
        rows = self._query("SELECT doc FROM units ORDER BY id")
        return [Unit.from_dict(json.loads(r["doc"])) for r in rows]

    def get_units_by_cluster(self, cluster_id: str) -> List[Unit]:
        rows = self._query("SELECT doc FROM units WHERE cluster_id = ? ORDER BY id", (cluster_id,))
        return [Unit.from_dict(json.loads(r["doc"])) for r in rows]

    def count_units(self) -> int:
        return self._query("SELECT COUNT(*) AS n FROM units")[0]["n"]

    def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        rows = self._query("SELECT * FROM clusters WHERE id = ?", (cluster_id,))
        if not rows:
            return None
        row = rows[0]
        return Cluster(
            id=row["id"],
            name=row["name"],
            unit_ids=json.loads(row["unit_ids"]),
            total_size=row["total_size"],
            max_size=row["max_size"],
        )

    def list_clusters(self) -> List[Cluster]:
        return [
            Cluster(
                id=row["id"],
                name=row["name"],
                unit_ids=json.loads(row["unit_ids"]),
                total_size=row["total_size"],
                max_size=row["max_size"],
            )
            for row in self._query("SELECT * FROM clusters ORDER BY id")
        ]

    @staticmethod
    def _to_dependency(row: sqlite3.Row) -> Dependency:
        return Dependency(source_id=row["source_id"], target_id=row["target_id"], type=row["type"])

    def get_dependencies(self, dep_type: Optional[str] = None) -> List[Dependency]:
        if dep_type is None:
            rows = self._query("SELECT * FROM dependencies ORDER BY id")
        else:
            rows = self._query("SELECT * FROM dependencies WHERE type = ? ORDER BY id", (dep_type,))
        return [self._to_dependency(r) for r in rows]

    def get_dependencies_by_source(self, source_id: str) -> List[Dependency]:
        rows = self._query("SELECT * FROM dependencies WHERE source_id = ? ORDER BY id", (source_id,))
        return [self._to_dependency(r) for r in rows]

    def get_dependencies_by_target(self, target_id: str) -> List[Dependency]:
        rows = self._query("SELECT * FROM dependencies WHERE target_id = ? ORDER BY id", (target_id,))
        return [self._to_dependency(r) for r in rows]

    def count_dependencies(self, dep_type: Optional[str] = None) -> int:
        if dep_type is None:
            return self._query("SELECT COUNT(*) AS n FROM dependencies")[0]["n"]
        return self._query("SELECT COUNT(*) AS n FROM dependencies WHERE type = ?", (dep_type,))[0]["n"]
