"""Use case for planning one migration batch."""
from typing import List, Optional
import logging

from safe_migrate.application.dtos.migration_dto import MigrationRequest
from safe_migrate.domain.entities.lifecycle import LifecycleKind, LifecycleState
from safe_migrate.domain.entities.operation import Operation, OperationKind, Phase
from safe_migrate.domain.entities.rules import NamingConvention
from safe_migrate.domain.entities.verdict import (
    MigrationReport, PlannedStatement, StateRequirement, Verdict, VerdictStatus,
)
from safe_migrate.domain.errors import LifecycleConflictError, MigrationSafetyError, UnsafeOperationError
from safe_migrate.domain.services.index_planner import ConcurrentIndexPlanner
from safe_migrate.domain.services.lifecycle_controller import ColumnLifecycleController
from safe_migrate.domain.services.migration_builder import MigrationBuilder
from safe_migrate.domain.services.phase_scheduler import PhaseScheduler, ScheduledBuckets
from safe_migrate.domain.services.statement_classifier import StatementClassifier
from safe_migrate.domain.services.verdict_reporter import VerdictReporter

logger = logging.getLogger(__name__)


class PlanMigrationUseCase:
    """
    Use case: classify → expand → schedule → report, all-or-nothing.
    Plans are committed only when the whole batch is accepted.
    """

    def __init__(
        self,
        classifier: StatementClassifier,
        controller: ColumnLifecycleController,
        index_planner: ConcurrentIndexPlanner,
        scheduler: PhaseScheduler,
        builder: MigrationBuilder,
        naming: NamingConvention,
    ):
        self._classifier = classifier
        self._controller = controller
        self._index_planner = index_planner
        self._scheduler = scheduler
        self._builder = builder
        self._naming = naming

    def execute(self, request: MigrationRequest) -> MigrationReport:
        rules = self._classifier.rule_table
        strict = rules.strict if request.strict is None else request.strict
        reporter = VerdictReporter(strict=strict, rule_table_version=rules.version)

        session = self._controller.begin_session()
        verdicts = self._classifier.classify_all(request.operations)
        errors: List[MigrationSafetyError] = []
        buckets: Optional[ScheduledBuckets] = None

        try:
            for plan_id, snapshot in request.backfill_results.items():
                self._controller.verify_backfill(self._controller.get(plan_id), snapshot)

            if not any(reporter.is_blocking(v) for v in verdicts):
                statements: List[PlannedStatement] = []
                for verdict in verdicts:
                    statements.extend(self._expand(verdict))
                buckets = self._scheduler.schedule(statements, self._controller.plans, session)
        except MigrationSafetyError as e:
            logger.error(f"[PlanMigration] {type(e).__name__}: {e}")
            errors.append(e)

        report = reporter.build(verdicts, buckets, self._controller.plans, errors, session)
        if report.ok:
            self._controller.commit()
        else:
            self._controller.rollback()
        return report

    def _expand(self, verdict: Verdict) -> List[PlannedStatement]:
        """Turn an accepted verdict into statements, applying its suggestion when blocked-with-suggestion."""
        op = verdict.operation
        bucket = op.phase_hint or Phase.PRE_DEPLOY
        suggested = verdict.status == VerdictStatus.BLOCKED_WITH_SUGGESTION
        kind = op.kind

        if kind == OperationKind.DROP_COLUMN:
            if op.phase_hint == Phase.POST_DEPLOY:
                return self._expand_removal(op)
            plan = self._controller.propose(op, LifecycleKind.DROP)
            return self._controller.expand(plan, Phase.PRE_DEPLOY) + self._controller.expand(plan, Phase.POST_DEPLOY)

        if kind == OperationKind.RENAME_COLUMN:
            if not op.column_type:
                raise UnsafeOperationError(
                    f"{op.describe()}: the shadow column needs a type; set 'definition' on the operation",
                    operation_id=op.operation_id,
                )
            plan = self._controller.propose(op, LifecycleKind.RENAME)
            return self._controller.expand(plan, Phase.PRE_DEPLOY)

        if kind == OperationKind.ADD_INDEX:
            return self._index_planner.statements_for(op, bucket)

        if kind == OperationKind.DROP_INDEX:
            return [self._index_planner.drop_statement(op, bucket)]

        if kind == OperationKind.ADD_CONSTRAINT and suggested:
            return self._expand_constraint(op)

        if kind == OperationKind.DROP_TABLE:
            bucket = Phase.POST_DEPLOY

        return [
            PlannedStatement(
                sql=sql,
                bucket=bucket,
                operation_id=op.operation_id,
                introduces=self._introduces(op),
                references=self._references(op),
                description=op.describe(),
            )
            for sql in self._builder.build(op)
        ]

    def _expand_removal(self, op: Operation) -> List[PlannedStatement]:
        plan = self._controller.find_active(op.table, op.column)
        if plan and plan.source_column != op.column:
            raise LifecycleConflictError(
                f"{op.table}.{op.column} is the new column of plan {plan.plan_id}; use compensate to abandon it",
                plan_id=plan.plan_id,
                operation_id=op.operation_id,
            )
        if plan and not plan.frozen and plan.state == plan.removal_gate:
            return self._controller.remove_old_column(plan)

        # Left for the scheduler to reject: the plan is missing or short of its gate.
        gate = plan.removal_gate if plan else LifecycleState.READONLY_MARKED
        return [
            PlannedStatement(
                sql=self._builder.drop_column(op.table, op.column),
                bucket=Phase.POST_DEPLOY,
                operation_id=op.operation_id,
                requires=StateRequirement(op.table, op.column, gate, strictly_earlier_bucket=True,
                                          plan_id=plan.plan_id if plan else None),
                references=((op.table, op.column),),
                description=op.describe(),
            )
        ]

    def _expand_constraint(self, op: Operation) -> List[PlannedStatement]:
        name = op.constraint_name or self._naming.constraint_name(op.table, op.columns or ("check",))
        refs = self._references(op)
        return [
            PlannedStatement(
                sql=self._builder.add_constraint(op.table, name, op.definition, not_valid=True),
                bucket=Phase.PRE_DEPLOY,
                operation_id=op.operation_id,
                references=refs,
                description=f"add {name} without validating existing rows",
            ),
            PlannedStatement(
                sql=self._builder.validate_constraint(op.table, name),
                bucket=Phase.POST_DEPLOY,
                operation_id=op.operation_id,
                references=refs,
                description=f"validate {name} against existing rows",
            ),
        ]

    def _introduces(self, op: Operation):
        if op.kind == OperationKind.CREATE_TABLE:
            return ((op.table, None),)
        if op.kind == OperationKind.ADD_COLUMN:
            return ((op.table, op.column),)
        return ()

    def _references(self, op: Operation):
        if not op.table or op.kind == OperationKind.CREATE_TABLE:
            return ()
        if op.columns and op.kind != OperationKind.ADD_COLUMN:
            return tuple((op.table, c) for c in op.columns)
        return ((op.table, None),)
