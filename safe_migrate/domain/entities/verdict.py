from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Dict, Any
from enum import Enum

from safe_migrate.domain.entities.operation import Operation, Phase, ExecutionMode
from safe_migrate.domain.entities.lifecycle import LifecycleState


class VerdictStatus(Enum):
    ALLOWED = "allowed"
    BLOCKED = "blocked"
    BLOCKED_WITH_SUGGESTION = "blocked_with_suggestion"


class PhaseLabel(Enum):
    SAFE_PRE_DEPLOY = "safe-pre-deploy"
    UNSAFE_PRE_DEPLOY = "unsafe-pre-deploy"
    POST_DEPLOY_ONLY = "post-deploy-only"


@dataclass(frozen=True)
class Verdict:
    """Classification result for one operation."""
    operation: Operation
    status: VerdictStatus
    label: PhaseLabel
    rationale: str
    suggestion: Optional[str] = None
    suggested_phases: Tuple[Phase, ...] = ()
    error_code: Optional[str] = None
    rule_key: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return self.status == VerdictStatus.BLOCKED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation.operation_id,
            "operation": self.operation.describe(),
            "status": self.status.value,
            "label": self.label.value,
            "rationale": self.rationale,
            "suggestion": self.suggestion,
            "suggested_phases": [p.value for p in self.suggested_phases],
            "error_code": self.error_code,
            "rule": self.rule_key,
        }


@dataclass(frozen=True)
class StateRequirement:
    """A lifecycle state that must exist before a statement may run."""
    table: str
    column: str
    state: LifecycleState
    strictly_earlier_bucket: bool = True
    plan_id: Optional[str] = None


@dataclass(frozen=True)
class PlannedStatement:
    """A finalized statement bound for one bucket."""
    sql: str
    bucket: Phase
    execution_mode: ExecutionMode = ExecutionMode.TRANSACTIONAL
    idempotent: bool = True
    repeat_until_no_rows: bool = False
    operation_id: str = ""
    plan_id: Optional[str] = None
    produces: Optional[LifecycleState] = None
    requires: Optional[StateRequirement] = None
    introduces: Tuple[Tuple[str, Optional[str]], ...] = ()
    references: Tuple[Tuple[str, Optional[str]], ...] = ()
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sql": self.sql,
            "execution_mode": self.execution_mode.value,
            "idempotent": self.idempotent,
            "repeat_until_no_rows": self.repeat_until_no_rows,
            "operation_id": self.operation_id,
            "plan_id": self.plan_id,
            "state": self.produces.value if self.produces else None,
            "description": self.description,
        }


@dataclass(frozen=True)
class IndexOperationPlan:
    """Idempotent drop-if-exists / create-concurrently pair for one index."""
    index_name: str
    table: str
    expression: str
    unique: bool
    where: Optional[str]
    statements: Tuple[str, str]
    execution_mode: ExecutionMode = ExecutionMode.NON_TRANSACTIONAL


@dataclass
class PhaseBucket:
    phase: Phase
    statements: List[PlannedStatement] = field(default_factory=list)

    @property
    def sql(self) -> List[str]:
        return [s.sql for s in self.statements]


@dataclass
class MigrationReport:
    """Aggregate result of one planning batch; the only externally visible output."""
    ok: bool
    verdicts: List[Verdict]
    pre_deploy: PhaseBucket
    post_deploy: PhaseBucket
    plans: List[Dict[str, Any]] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    rule_table_version: str = ""
    session: int = 0

    @property
    def blocked(self) -> List[Verdict]:
        return [v for v in self.verdicts if v.blocked]

    def raise_for_status(self) -> None:
        """Raise the first recorded failure as its engine error type."""
        from safe_migrate.domain import errors

        if self.ok:
            return
        if self.errors:
            first = self.errors[0]
            error_cls = getattr(errors, first["type"], errors.MigrationSafetyError)
            raise error_cls(first["message"])
        for verdict in self.verdicts:
            if verdict.status != VerdictStatus.ALLOWED:
                error_cls = getattr(errors, verdict.error_code or "", errors.UnsafeOperationError)
                raise error_cls(f"{verdict.operation.describe()}: {verdict.rationale}")
        raise errors.MigrationSafetyError("migration batch rejected")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "session": self.session,
            "rule_table_version": self.rule_table_version,
            "verdicts": [v.to_dict() for v in self.verdicts],
            "pre_deploy": [s.to_dict() for s in self.pre_deploy.statements],
            "post_deploy": [s.to_dict() for s in self.post_deploy.statements],
            "plans": self.plans,
            "diagnostics": self.diagnostics,
            "errors": self.errors,
        }
