"""Error taxonomy shared by ingestion, storage, loading and the command layer."""

from __future__ import annotations

from typing import Any, Dict, Optional


class UnitGraphError(Exception):
    """Base error for UnitGraph operations."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.context: Dict[str, Any] = context or {}
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


class ValidationError(UnitGraphError):
    """A required field is missing or has an invalid value."""


class NotFoundError(UnitGraphError):
    """An unknown unit or cluster id was requested."""


class PersistenceError(UnitGraphError):
    """A store transaction failed.

    Chunks committed before the failing one stay committed; ``committed``
    is the number of records written by those chunks.
    """

    def __init__(self, message: str, committed: int = 0, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, context)
        self.committed = committed


class ExecutionError(UnitGraphError):
    """Evaluation of an assembled bundle raised."""

    def __init__(self, message: str, trace: str = "", context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, context)
        self.trace = trace

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["stack"] = self.trace
        return payload


class IngestCancelled(UnitGraphError):
    """An ingestion was abandoned by its caller or a worker stalled."""
