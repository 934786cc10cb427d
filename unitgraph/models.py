"""Core data models used by extraction, storage, loading and tracing layers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

UNIT_KINDS = ("function", "arrow", "method")
EDGE_TYPES = ("static", "dynamic")


@dataclass
class DynamicRelationship:
    target_id: str
    frequency: int
    context: str = "runtime call"
    last_updated: str = ""


@dataclass
class Unit:
    id: str
    name: str
    kind: str
    code: str
    start_line: int
    end_line: int
    static_dependencies: List[str] = field(default_factory=list)
    dynamic_relationships: List[DynamicRelationship] = field(default_factory=list)
    cluster_id: Optional[str] = None
    original_source: str = "unknown"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def code_size(self) -> int:
        return len(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Unit":
        data = dict(payload)
        data["dynamic_relationships"] = [
            DynamicRelationship(**rel) for rel in data.get("dynamic_relationships") or []
        ]
        data["static_dependencies"] = list(data.get("static_dependencies") or [])
        data["metadata"] = dict(data.get("metadata") or {})
        return cls(**data)


@dataclass(frozen=True)
class Dependency:
    source_id: str
    target_id: str
    type: str = "static"

    @property
    def id(self) -> str:
        return f"dep:{self.source_id}->{self.target_id}:{self.type}"


@dataclass
class Cluster:
    id: str
    name: str
    unit_ids: List[str]
    total_size: int
    max_size: int

    @property
    def oversized(self) -> bool:
        return self.total_size > self.max_size


# ---------------------------------------------------------------------------
# Trace events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CallFrame:
    id: str
    name: str
    unit_id: Optional[str]


@dataclass
class CallStart:
    id: str
    parent_id: Optional[str]
    unit_id: Optional[str]
    name: str
    timestamp: float
    args_sample: List[Any] = field(default_factory=list)
    parent_unit_id: Optional[str] = None
    type: str = "callStart"


@dataclass
class CallEnd:
    id: str
    timestamp: float
    duration: float
    return_value_sample: Any = None
    is_async: bool = False
    type: str = "callEnd"


@dataclass
class CallError:
    id: str
    timestamp: float
    duration: float
    error: Any = None
    is_async: bool = False
    type: str = "callError"


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

@dataclass
class ScanStats:
    candidates: int = 0
    extracted: int = 0
    unmatched: int = 0
    unnamed: int = 0

    def merge(self, other: "ScanStats") -> None:
        self.candidates += other.candidates
        self.extracted += other.extracted
        self.unmatched += other.unmatched
        self.unnamed += other.unnamed


@dataclass
class IngestProgress:
    processed_chunks: int
    total_chunks: int
    processed_lines: int
    total_lines: int


@dataclass
class IngestResult:
    units_count: int
    dependencies_count: int
    stats: ScanStats = field(default_factory=ScanStats)


@dataclass
class ClusterResult:
    clusters: int
    units_updated: int


@dataclass
class OrderPlan:
    order: List[str]
    cycles: List[List[str]] = field(default_factory=list)


@dataclass
class ExecutionOutcome:
    result: Any
    logs: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class UpdateResult:
    updated: int
    events_consumed: int
