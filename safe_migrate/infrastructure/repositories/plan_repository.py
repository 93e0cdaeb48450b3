from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import copy
import json
import logging

from safe_migrate.domain.repositories.interfaces import IPlanRepository
from safe_migrate.domain.entities.lifecycle import (
    ColumnLifecyclePlan, LifecycleKind, LifecycleState, StateTransition,
)
from safe_migrate.domain.entities.operation import Phase

logger = logging.getLogger(__name__)


def plan_to_dict(plan: ColumnLifecyclePlan) -> Dict[str, Any]:
    return {
        "plan_id": plan.plan_id,
        "kind": plan.kind.value,
        "table": plan.table,
        "source_column": plan.source_column,
        "target_column": plan.target_column,
        "column_type": plan.column_type,
        "operation_id": plan.operation_id,
        "history": [
            {
                "state": t.state.value,
                "session": t.session,
                "bucket": t.bucket.value if t.bucket else None,
                "at": t.at.isoformat(),
                "note": t.note,
            }
            for t in plan.history
        ],
        "frozen": plan.frozen,
        "frozen_reason": plan.frozen_reason,
        "superseded_by": plan.superseded_by,
        "compensates": plan.compensates,
        "audit": plan.audit,
    }


def plan_from_dict(data: Dict[str, Any]) -> ColumnLifecyclePlan:
    return ColumnLifecyclePlan(
        plan_id=data["plan_id"],
        kind=LifecycleKind(data["kind"]),
        table=data["table"],
        source_column=data["source_column"],
        target_column=data.get("target_column"),
        column_type=data.get("column_type"),
        operation_id=data.get("operation_id", ""),
        history=[
            StateTransition(
                state=LifecycleState(t["state"]),
                session=int(t["session"]),
                bucket=Phase(t["bucket"]) if t.get("bucket") else None,
                at=datetime.fromisoformat(t["at"]),
                note=t.get("note", ""),
            )
            for t in data.get("history", [])
        ],
        frozen=bool(data.get("frozen", False)),
        frozen_reason=data.get("frozen_reason"),
        superseded_by=data.get("superseded_by"),
        compensates=data.get("compensates"),
        audit=list(data.get("audit", [])),
    )


class InMemoryPlanRepository(IPlanRepository):
    """Plan store for tests and single-process use."""

    def __init__(self, plans: Optional[List[ColumnLifecyclePlan]] = None):
        self._plans: Dict[str, ColumnLifecyclePlan] = {p.plan_id: copy.deepcopy(p) for p in plans or []}
        self._session = 0

    def list_plans(self) -> List[ColumnLifecyclePlan]:
        return [copy.deepcopy(p) for p in self._plans.values()]

    def get_plan(self, plan_id: str) -> Optional[ColumnLifecyclePlan]:
        plan = self._plans.get(plan_id)
        return copy.deepcopy(plan) if plan else None

    def save_plans(self, plans: List[ColumnLifecyclePlan]) -> None:
        for plan in plans:
            self._plans[plan.plan_id] = copy.deepcopy(plan)

    def next_session(self) -> int:
        self._session += 1
        return self._session


class JsonPlanRepository(IPlanRepository):
    """
    Plan store backed by one JSON file, so a plan survives between the
    pre-deploy and post-deploy planning runs.
    """

    def __init__(self, path: str):
        self._path = Path(path)

    def _read(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {"session": 0, "plans": []}
        with open(self._path, 'r') as f:
            return json.load(f)

    def _write(self, data: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, 'w') as f:
            json.dump(data, f, indent=2)
        tmp.replace(self._path)

    def list_plans(self) -> List[ColumnLifecyclePlan]:
        return [plan_from_dict(p) for p in self._read().get("plans", [])]

    def get_plan(self, plan_id: str) -> Optional[ColumnLifecyclePlan]:
        for plan in self.list_plans():
            if plan.plan_id == plan_id:
                return plan
        return None

    def save_plans(self, plans: List[ColumnLifecyclePlan]) -> None:
        data = self._read()
        stored = {p["plan_id"]: p for p in data.get("plans", [])}
        for plan in plans:
            stored[plan.plan_id] = plan_to_dict(plan)
        data["plans"] = list(stored.values())
        self._write(data)
        logger.debug(f"[JsonPlanRepository] Saved {len(plans)} plan(s) to {self._path}")

    def next_session(self) -> int:
        data = self._read()
        data["session"] = int(data.get("session", 0)) + 1
        self._write(data)
        return data["session"]
