"""Request/response command surface over a unit store.

Requests are plain dicts ``{"command": name, ...params}``; every response
carries ``success``.  Validation and lookup failures become
``{"success": False, "error": ...}``; a failing bundle evaluation is
reported inside the ``previewExecution`` payload.  Store failures propagate.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from py_mini_racer import JSEvalException

from .errors import ExecutionError, NotFoundError, ValidationError
from .extractor import extract_units
from .filters import find_units
from .graph_builder import NameIndex, build_static_edges
from .loader import BundleExecutor, load_and_execute
from .models import Unit
from .storage import UnitStore

logger = logging.getLogger(__name__)

Response = Dict[str, Any]

DIRECTIONS = ("outgoing", "incoming", "both")
_TRACE_LINES = 3
PLAN_STEP_FIELDS = {
    "createUnit": ("name", "code"),
    "updateUnit": ("id",),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require(request: Dict[str, Any], field: str, label: str) -> Any:
    value = request.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{label} is required")
    return value


class CommandDispatcher:
    """Route command requests to handlers bound to one store.

    Proposed updates are held per dispatcher until applied.
    """

    def __init__(self, store: UnitStore, executor: Optional[BundleExecutor] = None) -> None:
        self.store = store
        self.executor = executor
        self.pending_updates: Dict[str, Dict[str, Any]] = {}
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Response]] = {
            "getUnit": self.get_unit,
            "getCluster": self.get_cluster,
            "getDependencies": self.get_dependencies,
            "findUnits": self.find_units,
            "previewExecution": self.preview_execution,
            "proposeUpdate": self.propose_update,
            "applyUpdate": self.apply_update,
            "proposePlan": self.propose_plan,
        }

    def handle(self, request: Dict[str, Any]) -> Response:
        command = request.get("command")
        handler = self._handlers.get(command)
        if handler is None:
            return {"success": False, "error": f"Unknown command: {command}"}
        try:
            return handler(request)
        except (ValidationError, NotFoundError) as exc:
            logger.debug("Command %s rejected: %s", command, exc)
            return {"success": False, "error": exc.message, "code": exc.code}

    def _unit(self, unit_id: str) -> Unit:
        unit = self.store.get_unit(unit_id)
        if unit is None:
            raise NotFoundError(f"Unit not found: {unit_id}", context={"id": unit_id})
        return unit

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_unit(self, request: Dict[str, Any]) -> Response:
        unit = self._unit(_require(request, "id", "Unit ID"))
        return {"success": True, "unit": unit.to_dict()}

    def get_cluster(self, request: Dict[str, Any]) -> Response:
        cluster_id = _require(request, "id", "Cluster ID")
        units = self.store.get_units_by_cluster(cluster_id)
        if not units:
            raise NotFoundError(f"No units found in cluster: {cluster_id}", context={"id": cluster_id})
        cluster = self.store.get_cluster(cluster_id)
        payload: Response = {"success": True, "units": [u.to_dict() for u in units]}
        if cluster is not None:
            payload["cluster"] = {
                "id": cluster.id,
                "name": cluster.name,
                "total_size": cluster.total_size,
                "max_size": cluster.max_size,
            }
        return payload

    def get_dependencies(self, request: Dict[str, Any]) -> Response:
        unit = self._unit(_require(request, "id", "Unit ID"))
        direction = request.get("direction") or "both"
        if direction not in DIRECTIONS:
            raise ValidationError(f"direction must be one of: {', '.join(DIRECTIONS)}")

        dependencies: Response = {}
        if direction in ("outgoing", "both"):
            dependencies["outgoing"] = {
                "static": [d.target_id for d in self.store.get_dependencies_by_source(unit.id)
                           if d.type == "static"],
                "dynamic": [
                    {"target_id": r.target_id, "frequency": r.frequency, "context": r.context}
                    for r in unit.dynamic_relationships
                ],
            }
        if direction in ("incoming", "both"):
            callers = [
                {"source_id": u.id, "frequency": r.frequency}
                for u in self.store.get_all_units()
                for r in u.dynamic_relationships
                if r.target_id == unit.id
            ]
            dependencies["incoming"] = {
                "static": [d.source_id for d in self.store.get_dependencies_by_target(unit.id)
                           if d.type == "static"],
                "dynamic": callers,
            }
        return {"success": True, "id": unit.id, "raw": list(unit.static_dependencies), "dependencies": dependencies}

    def find_units(self, request: Dict[str, Any]) -> Response:
        units = find_units(self.store.get_all_units(), request.get("query"))
        return {"success": True, "units": [u.to_dict() for u in units], "count": len(units)}

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def preview_execution(self, request: Dict[str, Any]) -> Response:
        """Assemble and evaluate the bundle of one entry point.

        ``args`` is injected into the bundle scope as ``args``.  With
        ``invoke`` (default true) the entry unit is called with ``args`` and
        its return value becomes ``result``; a string ``invoke`` is evaluated
        as the final expression instead.
        """
        entry = self._unit(_require(request, "entryPointId", "Entry point ID"))
        args = request.get("args")
        invoke = request.get("invoke", True)
        if isinstance(invoke, str):
            invocation: Optional[str] = invoke
        elif invoke:
            invocation = f"{entry.name}(args)"
        else:
            invocation = None

        try:
            outcome = load_and_execute(
                self.store,
                [entry.id],
                context={"args": args if args is not None else {}},
                invocation=invocation,
                executor=self.executor,
            )
        except JSEvalException as exc:
            lines = str(exc).strip().splitlines()
            error = ExecutionError(lines[0] if lines else type(exc).__name__,
                                   trace="\n".join(lines[:_TRACE_LINES]))
            logger.info("Preview of %s failed: %s", entry.id, error.message)
            return {"success": False, "result": None, "logs": [], "error": error.to_dict()}
        return {"success": True, "result": outcome.result, "logs": outcome.logs}

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def propose_update(self, request: Dict[str, Any]) -> Response:
        unit_id = _require(request, "id", "Unit ID")
        new_code = _require(request, "newCode", "New code")
        unit = self._unit(unit_id)
        self.pending_updates[unit_id] = {
            "type": "update",
            "unit_id": unit_id,
            "original_code": unit.code,
            "new_code": new_code,
            "new_tests": request.get("newTests"),
            "description": request.get("description"),
            "proposed_at": _now(),
        }
        return {
            "success": True,
            "message": f"Update proposed for unit: {unit_id}",
            "pending_updates": len(self.pending_updates),
        }

    def apply_update(self, request: Dict[str, Any]) -> Response:
        unit_id = _require(request, "id", "Unit ID")
        update = self.pending_updates.get(unit_id)
        if update is None:
            raise NotFoundError(f"No pending update found for unit: {unit_id}", context={"id": unit_id})
        if update.get("type") == "plan":
            raise ValidationError(f"{unit_id} is a plan; plans cannot be applied with applyUpdate")
        unit = self.store.get_unit(unit_id)
        if unit is None:
            del self.pending_updates[unit_id]
            raise NotFoundError(f"Unit not found: {unit_id}", context={"id": unit_id})

        unit.code = update["new_code"]
        rescanned = [u for u in extract_units(unit.code, unit.start_line - 1, unit.original_source).units
                     if u.name == unit.name]
        if rescanned:
            unit.static_dependencies = rescanned[0].static_dependencies
            unit.end_line = unit.start_line + unit.code.count("\n")
        else:
            logger.warning("Updated code of %s no longer defines %s; keeping its references", unit_id, unit.name)

        unit.metadata["last_updated"] = _now()
        if update.get("description"):
            unit.metadata["description"] = update["description"]
        if update.get("new_tests"):
            unit.metadata.setdefault("tests", []).append({
                "id": f"test_{int(time.time() * 1000)}",
                "code": update["new_tests"],
                "created_at": _now(),
            })

        self.store.put_units([unit])
        index = NameIndex(self.store.get_all_units())
        self.store.replace_outgoing(unit.id, build_static_edges([unit], index))
        del self.pending_updates[unit_id]
        return {
            "success": True,
            "message": f"Update applied to unit: {unit_id}",
            "pending_updates": len(self.pending_updates),
        }

    def propose_plan(self, request: Dict[str, Any]) -> Response:
        """Hold a multi-step plan of ``createUnit``/``updateUnit`` steps for review.

        Every step needs an ``action`` and a ``details`` mapping; ``createUnit``
        details need ``name`` and ``code``, ``updateUnit`` details need ``id``.
        Plans are stored alongside single-unit updates but are never applied by
        :meth:`apply_update`.
        """
        plan = request.get("plan")
        if not isinstance(plan, list) or not plan:
            raise ValidationError("Missing or invalid plan array")
        description = _require(request, "description", "Plan description")

        for position, step in enumerate(plan, 1):
            if not isinstance(step, dict) or not step.get("action") or not isinstance(step.get("details"), dict):
                raise ValidationError(f"Invalid step {position}: missing action or details")
            action, details = step["action"], step["details"]
            required = PLAN_STEP_FIELDS.get(action)
            if required is None:
                raise ValidationError(f"Unknown step action: {action}", context={"allowed": sorted(PLAN_STEP_FIELDS)})
            missing = [name for name in required if not details.get(name)]
            if missing:
                raise ValidationError(f"Invalid {action} step {position}: missing {', '.join(missing)}")

        plan_id = request.get("planId") or f"plan_{int(time.time() * 1000)}"
        self.pending_updates[plan_id] = {
            "type": "plan",
            "plan_id": plan_id,
            "description": description,
            "steps": plan,
            "proposed_at": _now(),
        }
        logger.info("Plan %s proposed with %d steps", plan_id, len(plan))
        return {
            "success": True,
            "message": f"Plan {plan_id} proposed successfully.",
            "plan_id": plan_id,
            "pending_updates": len(self.pending_updates),
        }
