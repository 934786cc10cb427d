"""Configuration paths and tunables for local UnitGraph storage."""

from __future__ import annotations

from .config_manager import BASE_DIR, load_settings

DB_PATH = BASE_DIR / "units.db"

_settings = load_settings()

# Ingestion: lines per worker chunk, worker pool size, stalled-worker timeout (seconds)
INGEST_CHUNK_LINES = int(_settings["ingest_chunk_lines"])
INGEST_MAX_WORKERS = int(_settings["ingest_max_workers"])
WORKER_TIMEOUT = _settings.get("worker_timeout")

# Store: units per atomic write chunk
BATCH_CHUNK_SIZE = int(_settings["batch_chunk_size"])

CLUSTER_MAX_SIZE = int(_settings["cluster_max_size"])

# Dynamic relationships above this frequency are load-time requirements
HOT_FREQUENCY_THRESHOLD = int(_settings["hot_frequency_threshold"])

UPDATE_INTERVAL_MS = int(_settings["update_interval_ms"])
EXECUTION_TIMEOUT_MS = _settings.get("execution_timeout_ms")

