"""Pytest configuration and fixtures for UnitGraph tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from unitgraph.config_manager import DEFAULT_SETTINGS
from unitgraph.models import Unit
from unitgraph.storage import UnitStore


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def store(temp_dir: Path) -> Generator[UnitStore, None, None]:
    """A UnitStore backed by a temporary database."""
    unit_store = UnitStore(temp_dir / "units.db")
    yield unit_store
    unit_store.close()


@pytest.fixture
def isolated_config(temp_dir: Path, monkeypatch) -> Path:
    """Point the settings file at a temporary location."""
    base = temp_dir / "home"
    monkeypatch.setattr("unitgraph.config_manager.BASE_DIR", base)
    monkeypatch.setattr("unitgraph.config_manager.CONFIG_FILE", base / "config.toml")
    for key in DEFAULT_SETTINGS:
        monkeypatch.delenv(f"UNITGRAPH_{key.upper()}", raising=False)
    return base / "config.toml"


@pytest.fixture
def sample_js_source() -> str:
    """Small program with declared, arrow and method-style units."""
    return '''// sample program
function add(a, b) {
  return a + b;
}

const double = (x) => {
  return add(x, x);
};

const square = x => x * x;

const calculator = {
  total(values) {
    let sum = 0;
    for (const v of values) { sum = add(sum, v); }
    return sum;
  },
};

function main() {
  console.log("main } called");
  return add(1, 1);
}
'''


@pytest.fixture
def sample_js_file(temp_dir: Path, sample_js_source: str) -> Path:
    path = temp_dir / "sample.js"
    path.write_text(sample_js_source)
    return path


def _make_unit(name: str, code: str = "", deps=None, start_line: int = 1, origin: str = "test.js", **kwargs) -> Unit:
    """Build a unit directly, bypassing extraction."""
    return Unit(
        id=kwargs.pop("id", f"{origin}:{name}:{start_line}"),
        name=name,
        kind=kwargs.pop("kind", "function"),
        code=code or f"function {name}() {{}}",
        start_line=start_line,
        end_line=kwargs.pop("end_line", start_line),
        static_dependencies=list(deps or []),
        original_source=origin,
        **kwargs,
    )


@pytest.fixture
def make_unit():
    """Factory for hand-built units."""
    return _make_unit
