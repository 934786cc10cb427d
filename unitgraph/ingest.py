"""Chunked, parallel ingestion of source text into the unit store.

Source text is split into line chunks.  Each chunk is scanned by an isolated
worker process that receives an immutable :class:`ChunkRequest` and returns a
self-contained :class:`ChunkResponse`; workers share no state.  Results are
consumed in submission order, which only matters for progress reporting:
unit ids are derived from absolute line numbers, not from arrival order.

Chunks are cut on line boundaries without looking at the lexical state, so
two limits follow.  A unit that straddles a boundary is dropped by both
neighbouring chunks.  A chunk that starts inside a block comment or a
template literal is scanned as code, so a commented-out definition on the
far side of the boundary can become a unit.
"""

from __future__ import annotations

import logging
import multiprocessing
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from . import config
from .errors import IngestCancelled
from .extractor import assign_unique_ids, extract_units
from .graph_builder import build_static_edges
from .models import IngestProgress, IngestResult, ScanStats, Unit
from .storage import UnitStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[IngestProgress], None]

_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class ChunkRequest:
    index: int
    code: str
    line_offset: int
    original_source: str


@dataclass
class ChunkResponse:
    index: int
    units: List[Unit] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)
    processed_lines: int = 0


def split_into_chunks(source: str, original_source: str, chunk_lines: int) -> List[ChunkRequest]:
    if chunk_lines < 1:
        raise ValueError("chunk_lines must be >= 1")
    lines = source.split("\n")
    return [
        ChunkRequest(
            index=idx,
            code="\n".join(lines[offset:offset + chunk_lines]),
            line_offset=offset,
            original_source=original_source,
        )
        for idx, offset in enumerate(range(0, len(lines), chunk_lines))
    ]


def scan_chunk(request: ChunkRequest) -> ChunkResponse:
    """Worker entry point: scan one chunk."""
    result = extract_units(request.code, request.line_offset, request.original_source)
    return ChunkResponse(
        index=request.index,
        units=result.units,
        stats=result.stats,
        processed_lines=request.code.count("\n") + 1,
    )


def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise IngestCancelled("Ingestion cancelled by caller")


def scan_chunks(
    chunks: List[ChunkRequest],
    max_workers: Optional[int] = None,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> List[ChunkResponse]:
    """Scan chunks in worker processes, reporting progress in submission order.

    Args:
        chunks:       Requests from :func:`split_into_chunks`.
        max_workers:  Pool size; a single chunk or ``max_workers <= 1`` scans inline.
        timeout:      Seconds to wait for any one chunk before the ingestion is
                      abandoned as stalled.
        cancel_event: Set by the caller to abandon the ingestion.
        on_progress:  Called after every consumed chunk.

    Raises:
        IngestCancelled: on cancellation or a stalled worker.  Worker
            processes are terminated before the error propagates.
    """
    max_workers = config.INGEST_MAX_WORKERS if max_workers is None else max_workers
    total_lines = sum(c.code.count("\n") + 1 for c in chunks)
    responses: List[ChunkResponse] = []
    processed_lines = 0

    def _consume(response: ChunkResponse) -> None:
        nonlocal processed_lines
        responses.append(response)
        processed_lines += response.processed_lines
        if on_progress is not None:
            on_progress(IngestProgress(
                processed_chunks=len(responses),
                total_chunks=len(chunks),
                processed_lines=processed_lines,
                total_lines=total_lines,
            ))

    if len(chunks) <= 1 or max_workers <= 1:
        for chunk in chunks:
            _check_cancel(cancel_event)
            _consume(scan_chunk(chunk))
        return responses

    pool = multiprocessing.get_context().Pool(processes=min(max_workers, len(chunks)))
    abandoned = True
    try:
        pending = [pool.apply_async(scan_chunk, (chunk,)) for chunk in chunks]
        for chunk, async_result in zip(chunks, pending):
            _check_cancel(cancel_event)
            deadline = None if timeout is None else time.monotonic() + timeout
            while not async_result.ready():
                _check_cancel(cancel_event)
                if deadline is not None and time.monotonic() >= deadline:
                    raise IngestCancelled(
                        f"Worker for chunk {chunk.index} stalled for more than {timeout}s",
                        context={"chunk": chunk.index, "line_offset": chunk.line_offset},
                    )
                async_result.wait(_POLL_SECONDS)
            try:
                response = async_result.get()
            except Exception as exc:
                logger.warning("Error processing chunk %d: %s", chunk.index, exc)
                response = ChunkResponse(index=chunk.index, processed_lines=chunk.code.count("\n") + 1)
            _consume(response)
        abandoned = False
    finally:
        if abandoned:
            pool.terminate()
        else:
            pool.close()
        pool.join()
    return responses


def _merge_existing(store: UnitStore, units: List[Unit]) -> None:
    """Carry cluster, runtime and metadata state over from stored units with the same id."""
    existing = {u.id: u for u in store.get_units([u.id for u in units])}
    for unit in units:
        previous = existing.get(unit.id)
        if previous is None:
            continue
        unit.cluster_id = previous.cluster_id
        unit.dynamic_relationships = previous.dynamic_relationships
        unit.metadata = previous.metadata


def ingest_source(
    store: UnitStore,
    source: str,
    original_source: str = "unknown",
    chunk_lines: Optional[int] = None,
    max_workers: Optional[int] = None,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> IngestResult:
    """Extract units from ``source``, build static edges and merge both into ``store``.

    Re-ingesting unchanged text is idempotent: units are replaced by id
    (keeping their cluster, dynamic relationships and metadata) and edges are
    upserted on ``(source, target, type)``.

    Raises:
        PersistenceError: a store chunk failed; earlier chunks stay committed.
        IngestCancelled:  the caller cancelled or a worker stalled.
    """
    chunk_lines = chunk_lines or config.INGEST_CHUNK_LINES
    timeout = config.WORKER_TIMEOUT if timeout is None else timeout
    chunks = split_into_chunks(source, original_source, chunk_lines)
    responses = scan_chunks(chunks, max_workers, timeout, cancel_event, on_progress)

    stats = ScanStats()
    units: List[Unit] = []
    for response in responses:
        stats.merge(response.stats)
        units.extend(response.units)
    units = assign_unique_ids(units)

    edges = build_static_edges(units)
    _check_cancel(cancel_event)

    if units:
        _merge_existing(store, units)
        store.put_units(units)
    if edges:
        store.put_dependencies(edges)

    logger.info(
        "Ingested %s: %d units, %d static edges (%d candidates, %d skipped)",
        original_source, len(units), len(edges), stats.candidates,
        stats.unmatched + stats.unnamed,
    )
    return IngestResult(units_count=len(units), dependencies_count=len(edges), stats=stats)


def ingest_file(store: UnitStore, path: Path, original_source: Optional[str] = None, **kwargs) -> IngestResult:
    source = path.read_text(encoding="utf-8", errors="ignore")
    return ingest_source(store, source, original_source or path.name, **kwargs)
