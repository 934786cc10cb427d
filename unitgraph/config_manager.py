"""Settings manager for UnitGraph using a TOML file."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import toml

logger = logging.getLogger(__name__)

BASE_DIR = Path(os.environ.get("UNITGRAPH_HOME", str(Path.home() / ".unitgraph"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"


DEFAULT_SETTINGS: Dict[str, Any] = {
    "ingest_chunk_lines": 10000,
    "ingest_max_workers": 4,
    "worker_timeout": None,
    "batch_chunk_size": 50,
    "cluster_max_size": 5000,
    "hot_frequency_threshold": 5,
    "update_interval_ms": 30000,
    "execution_timeout_ms": None,
}

# Settings that may be left unset (no limit)
_OPTIONAL_KEYS = {"worker_timeout", "execution_timeout_ms"}


def _coerce(key: str, raw: Any) -> Any:
    """Coerce a raw TOML/env value to the type of its default."""
    if raw is None or (isinstance(raw, str) and raw.strip().lower() in ("", "none")):
        if key in _OPTIONAL_KEYS:
            return None
        raise ValueError(f"Setting '{key}' requires a value")
    if key == "worker_timeout":
        return float(raw)
    return int(raw)


def load_full_config() -> Dict[str, Any]:
    """Load the entire TOML config (all sections)."""
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, "r") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", CONFIG_FILE, exc)
        return {}


def load_settings() -> Dict[str, Any]:
    """Load settings from the ``[settings]`` table, then ``UNITGRAPH_*`` env vars.

    Returns:
        A complete settings dict; unknown keys in the file are ignored and
        invalid values fall back to :data:`DEFAULT_SETTINGS`.
    """
    settings = DEFAULT_SETTINGS.copy()
    file_settings = load_full_config().get("settings", {})

    for key in DEFAULT_SETTINGS:
        raw: Optional[Any] = file_settings.get(key, settings[key])
        env_value = os.environ.get(f"UNITGRAPH_{key.upper()}")
        if env_value is not None:
            raw = env_value
        try:
            settings[key] = _coerce(key, raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Invalid value for setting '%s' (%r): %s", key, raw, exc)
    return settings


def save_setting(key: str, value: str) -> bool:
    """Persist one setting into the ``[settings]`` table.

    Preserves other sections in the file.

    Returns:
        True if saved successfully, False otherwise.
    """
    if key not in DEFAULT_SETTINGS:
        raise KeyError(key)
    coerced = _coerce(key, value)

    config = load_full_config()
    section = config.setdefault("settings", {})
    if coerced is None:
        section.pop(key, None)
    else:
        section[key] = coerced

    BASE_DIR.mkdir(parents=True, exist_ok=True)
    try:
        with open(CONFIG_FILE, "w") as f:
            toml.dump(config, f)
        return True
    except OSError as exc:
        logger.warning("Could not write config file %s: %s", CONFIG_FILE, exc)
        return False
