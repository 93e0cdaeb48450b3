from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple, Dict, Any

from safe_migrate.domain.entities.operation import Phase


class LifecycleKind(Enum):
    RENAME = "rename"
    DROP = "drop"


class LifecycleState(Enum):
    """States of a column lifecycle plan, in canonical order."""
    PROPOSED = "proposed"
    READONLY_MARKED = "readonly_marked"
    SHADOW_ADDED = "shadow_added"
    TRIGGER_INSTALLED = "trigger_installed"
    BACKFILLING = "backfilling"
    BACKFILL_VERIFIED = "backfill_verified"
    OLD_REMOVED = "old_removed"


CANONICAL_PATHS: Dict[LifecycleKind, Tuple[LifecycleState, ...]] = {
    LifecycleKind.RENAME: (
        LifecycleState.PROPOSED,
        LifecycleState.READONLY_MARKED,
        LifecycleState.SHADOW_ADDED,
        LifecycleState.TRIGGER_INSTALLED,
        LifecycleState.BACKFILLING,
        LifecycleState.BACKFILL_VERIFIED,
        LifecycleState.OLD_REMOVED,
    ),
    LifecycleKind.DROP: (
        LifecycleState.PROPOSED,
        LifecycleState.READONLY_MARKED,
        LifecycleState.OLD_REMOVED,
    ),
}

# State a plan must have reached, in a strictly earlier bucket, before the
# old column may be dropped.
REMOVAL_GATES: Dict[LifecycleKind, LifecycleState] = {
    LifecycleKind.RENAME: LifecycleState.BACKFILL_VERIFIED,
    LifecycleKind.DROP: LifecycleState.READONLY_MARKED,
}


@dataclass(frozen=True)
class StateTransition:
    """One entry of a plan's append-only history."""
    state: LifecycleState
    session: int
    bucket: Optional[Phase]
    at: datetime
    note: str = ""

    @property
    def position(self) -> Tuple[int, int]:
        return (self.session, self.bucket.order if self.bucket else -1)


@dataclass
class ColumnLifecyclePlan:
    """
    Multi-step rename or drop of one column across deploy phases.
    The history only ever grows; state is its last entry.
    """
    plan_id: str
    kind: LifecycleKind
    table: str
    source_column: str
    target_column: Optional[str] = None
    column_type: Optional[str] = None
    operation_id: str = ""
    history: List[StateTransition] = field(default_factory=list)
    frozen: bool = False
    frozen_reason: Optional[str] = None
    superseded_by: Optional[str] = None
    compensates: Optional[str] = None
    audit: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def state(self) -> LifecycleState:
        return self.history[-1].state if self.history else LifecycleState.PROPOSED

    @property
    def path(self) -> Tuple[LifecycleState, ...]:
        return CANONICAL_PATHS[self.kind]

    @property
    def removal_gate(self) -> LifecycleState:
        return REMOVAL_GATES[self.kind]

    @property
    def terminal(self) -> bool:
        return self.state == LifecycleState.OLD_REMOVED

    @property
    def active(self) -> bool:
        return not self.terminal and self.superseded_by is None

    @property
    def next_state(self) -> Optional[LifecycleState]:
        path = self.path
        index = path.index(self.state)
        return path[index + 1] if index + 1 < len(path) else None

    @property
    def visited(self) -> List[LifecycleState]:
        return [t.state for t in self.history]

    def targets(self, table: str, column: str) -> bool:
        return self.table == table and column in (self.source_column, self.target_column)

    def reached(self, state: LifecycleState) -> Optional[StateTransition]:
        for transition in self.history:
            if transition.state == state:
                return transition
        return None

    def record(self, state: LifecycleState, session: int, bucket: Optional[Phase], note: str = "") -> StateTransition:
        """Append a transition; only the next state on the canonical path is accepted."""
        if self.history and state != self.next_state:
            raise ValueError(
                f"plan {self.plan_id} cannot move from {self.state.value} to {state.value}"
            )
        if not self.history and state != LifecycleState.PROPOSED:
            raise ValueError(f"plan {self.plan_id} must start in {LifecycleState.PROPOSED.value}")
        transition = StateTransition(
            state=state,
            session=session,
            bucket=bucket,
            at=datetime.now(timezone.utc),
            note=note,
        )
        self.history.append(transition)
        return transition

    def summary(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "kind": self.kind.value,
            "table": self.table,
            "source_column": self.source_column,
            "target_column": self.target_column,
            "state": self.state.value,
            "visited": [s.value for s in self.visited],
            "frozen": self.frozen,
            "frozen_reason": self.frozen_reason,
            "superseded_by": self.superseded_by,
            "compensates": self.compensates,
        }
