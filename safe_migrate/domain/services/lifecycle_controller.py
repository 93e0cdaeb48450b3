from typing import Dict, List, Optional, Tuple, Callable
import copy
import logging

from safe_migrate.domain.entities.lifecycle import (
    ColumnLifecyclePlan, LifecycleKind, LifecycleState,
)
from safe_migrate.domain.entities.operation import Operation, OperationKind, Phase, ExecutionMode, BackfillSnapshot
from safe_migrate.domain.entities.rules import NamingConvention
from safe_migrate.domain.entities.verdict import PlannedStatement, StateRequirement
from safe_migrate.domain.errors import (
    LifecycleConflictError, LifecycleTransitionError, PlanNotFoundError, VerificationMismatchError,
)
from safe_migrate.domain.repositories.interfaces import IPlanRepository
from safe_migrate.domain.services.backfill_verifier import BackfillVerifier
from safe_migrate.domain.services.migration_builder import MigrationBuilder

logger = logging.getLogger(__name__)

PRE_DEPLOY_STATES = (
    LifecycleState.READONLY_MARKED,
    LifecycleState.SHADOW_ADDED,
    LifecycleState.TRIGGER_INSTALLED,
    LifecycleState.BACKFILLING,
)


class ColumnLifecycleController:
    """
    Sequences rename/drop of a column across the pre- and post-deploy buckets.

    Every transition returns the idempotent statements that realise it and
    records the new state on the plan. Plans are working copies until
    commit(); a frozen plan is persisted as soon as it freezes.
    """

    def __init__(
        self,
        builder: MigrationBuilder,
        naming: NamingConvention,
        verifier: BackfillVerifier,
        repository: IPlanRepository,
        batch_size: int = 10000,
    ):
        self._builder = builder
        self._naming = naming
        self._verifier = verifier
        self._repository = repository
        self._batch_size = batch_size
        self._session = 0
        self._plans: Dict[str, ColumnLifecyclePlan] = {}
        self._dirty: set = set()
        self._load()

    @property
    def session(self) -> int:
        return self._session

    @property
    def plans(self) -> List[ColumnLifecyclePlan]:
        return list(self._plans.values())

    def begin_session(self) -> int:
        self._load()
        self._session = self._repository.next_session()
        logger.info(f"[LifecycleController] Planning session {self._session} with {len(self._plans)} known plans")
        return self._session

    def commit(self) -> None:
        changed = [self._plans[pid] for pid in sorted(self._dirty)]
        if changed:
            self._repository.save_plans(changed)
            logger.info(f"[LifecycleController] Committed {len(changed)} plan(s)")
        self._dirty.clear()

    def rollback(self) -> None:
        if self._dirty:
            logger.info(f"[LifecycleController] Discarding changes to {len(self._dirty)} plan(s)")
        self._load()

    def get(self, plan_id: str) -> ColumnLifecyclePlan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"lifecycle plan {plan_id} does not exist", plan_id=plan_id)
        return plan

    def find_active(self, table: str, column: str) -> Optional[ColumnLifecyclePlan]:
        for plan in self._plans.values():
            if plan.active and plan.targets(table, column):
                return plan
        return None

    def propose(self, operation: Operation, kind: LifecycleKind) -> ColumnLifecyclePlan:
        """Create a plan; a column may only have one active plan at a time."""
        source = operation.column
        target = operation.new_column if kind == LifecycleKind.RENAME else None
        for column in filter(None, (source, target)):
            existing = self.find_active(operation.table, column)
            if existing:
                raise LifecycleConflictError(
                    f"{operation.table}.{column} already has active plan {existing.plan_id} "
                    f"in state {existing.state.value}",
                    plan_id=existing.plan_id,
                    operation_id=operation.operation_id,
                )

        plan = ColumnLifecyclePlan(
            plan_id=self._new_plan_id(kind, operation.table, source),
            kind=kind,
            table=operation.table,
            source_column=source,
            target_column=target,
            column_type=operation.column_type,
            operation_id=operation.operation_id,
        )
        plan.record(LifecycleState.PROPOSED, self._session, None, note=operation.describe())
        self._track(plan)
        logger.info(f"[LifecycleController] Proposed {plan.plan_id} for {operation.describe()}")
        return plan

    def expand(self, plan: ColumnLifecyclePlan, bucket: Phase) -> List[PlannedStatement]:
        """Run every transition of the plan that belongs in the given bucket."""
        statements: List[PlannedStatement] = []
        if bucket == Phase.PRE_DEPLOY:
            steps: Dict[LifecycleState, Callable[[ColumnLifecyclePlan], List[PlannedStatement]]] = {
                LifecycleState.READONLY_MARKED: self.mark_readonly,
                LifecycleState.SHADOW_ADDED: self.add_shadow_column,
                LifecycleState.TRIGGER_INSTALLED: self.install_sync_trigger,
                LifecycleState.BACKFILLING: self.start_backfill,
            }
            while plan.next_state in PRE_DEPLOY_STATES:
                statements.extend(steps[plan.next_state](plan))
        elif plan.state == plan.removal_gate:
            statements.extend(self.remove_old_column(plan))
        return statements

    def mark_readonly(self, plan: ColumnLifecyclePlan) -> List[PlannedStatement]:
        self._transition(plan, LifecycleState.READONLY_MARKED, Phase.PRE_DEPLOY)
        sql = self._builder.mark_readonly(plan.table, plan.source_column, plan.plan_id)
        return [self._statement(plan, sql, Phase.PRE_DEPLOY, LifecycleState.PROPOSED,
                                produces=LifecycleState.READONLY_MARKED,
                                references=((plan.table, plan.source_column),),
                                description=f"mark {plan.table}.{plan.source_column} read-only for application code")]

    def add_shadow_column(self, plan: ColumnLifecyclePlan) -> List[PlannedStatement]:
        self._require_kind(plan, LifecycleKind.RENAME)
        self._transition(plan, LifecycleState.SHADOW_ADDED, Phase.PRE_DEPLOY)
        sql = self._builder.add_column(plan.table, plan.target_column, plan.column_type or "")
        return [self._statement(plan, sql, Phase.PRE_DEPLOY, LifecycleState.READONLY_MARKED,
                                produces=LifecycleState.SHADOW_ADDED,
                                introduces=((plan.table, plan.target_column),),
                                description=f"add shadow column {plan.table}.{plan.target_column}")]

    def install_sync_trigger(self, plan: ColumnLifecyclePlan) -> List[PlannedStatement]:
        self._require_kind(plan, LifecycleKind.RENAME)
        self._transition(plan, LifecycleState.TRIGGER_INSTALLED, Phase.PRE_DEPLOY)
        function_name, trigger_name = self._sync_names(plan)
        prior = LifecycleState.SHADOW_ADDED
        refs = ((plan.table, plan.source_column), (plan.table, plan.target_column))
        return [
            self._statement(plan, self._builder.sync_function(function_name, plan.source_column, plan.target_column),
                            Phase.PRE_DEPLOY, prior, references=refs,
                            description=f"sync function copying {plan.source_column} into {plan.target_column}"),
            self._statement(plan, self._builder.drop_trigger(trigger_name, plan.table),
                            Phase.PRE_DEPLOY, prior, references=refs,
                            description=f"drop {trigger_name} if left by an earlier attempt"),
            self._statement(plan, self._builder.create_trigger(trigger_name, plan.table, plan.source_column, function_name),
                            Phase.PRE_DEPLOY, prior, produces=LifecycleState.TRIGGER_INSTALLED, references=refs,
                            description=f"install {trigger_name}"),
        ]

    def start_backfill(self, plan: ColumnLifecyclePlan) -> List[PlannedStatement]:
        self._require_kind(plan, LifecycleKind.RENAME)
        self._transition(plan, LifecycleState.BACKFILLING, Phase.PRE_DEPLOY)
        return self._backfill_statements(plan)

    def verify_backfill(self, plan: ColumnLifecyclePlan, snapshot: BackfillSnapshot) -> None:
        """
        Accept or reject the measured backfill. A mismatch freezes the plan in
        BACKFILLING; only resume() or compensate() can move it on.
        """
        self._require_kind(plan, LifecycleKind.RENAME)
        if plan.frozen:
            raise LifecycleTransitionError(
                f"plan {plan.plan_id} is frozen: {plan.frozen_reason}", plan_id=plan.plan_id
            )
        if plan.state != LifecycleState.BACKFILLING:
            raise LifecycleTransitionError(
                f"plan {plan.plan_id} is in {plan.state.value}, verification needs "
                f"{LifecycleState.BACKFILLING.value}",
                plan_id=plan.plan_id,
            )

        result = self._verifier.evaluate(snapshot)
        plan.audit.append({
            "event": "verification",
            "session": self._session,
            "total_rows": snapshot.total_rows,
            "mismatched_rows": snapshot.mismatched_rows,
            "matched": result.matched,
        })
        if not result.matched:
            plan.frozen = True
            plan.frozen_reason = "; ".join(result.problems)
            self._repository.save_plans([plan])
            self._dirty.discard(plan.plan_id)
            logger.error(f"[LifecycleController] Verification failed for {plan.plan_id}: {plan.frozen_reason}")
            raise VerificationMismatchError(
                f"backfill verification failed for {plan.plan_id}: {plan.frozen_reason}",
                plan_id=plan.plan_id,
            )

        self._transition(plan, LifecycleState.BACKFILL_VERIFIED, Phase.PRE_DEPLOY,
                         note=f"{snapshot.total_rows} rows verified")
        logger.info(f"[LifecycleController] Backfill verified for {plan.plan_id}")

    def remove_old_column(self, plan: ColumnLifecyclePlan) -> List[PlannedStatement]:
        gate = plan.removal_gate
        if plan.reached(gate) is None:
            raise LifecycleTransitionError(
                f"refusing to drop {plan.table}.{plan.source_column}: plan {plan.plan_id} has not reached {gate.value}",
                plan_id=plan.plan_id,
            )
        self._transition(plan, LifecycleState.OLD_REMOVED, Phase.POST_DEPLOY)

        requirement = StateRequirement(plan.table, plan.source_column, gate,
                                       strictly_earlier_bucket=True, plan_id=plan.plan_id)
        refs = ((plan.table, plan.source_column),)
        statements = []
        if plan.kind == LifecycleKind.RENAME:
            function_name, trigger_name = self._sync_names(plan)
            statements.append(PlannedStatement(
                sql=self._builder.drop_trigger(trigger_name, plan.table), bucket=Phase.POST_DEPLOY,
                operation_id=plan.operation_id, plan_id=plan.plan_id, requires=requirement, references=refs,
                description=f"drop sync trigger {trigger_name}"))
            statements.append(PlannedStatement(
                sql=self._builder.drop_function(function_name), bucket=Phase.POST_DEPLOY,
                operation_id=plan.operation_id, plan_id=plan.plan_id, requires=requirement, references=refs,
                description=f"drop sync function {function_name}"))
        statements.append(PlannedStatement(
            sql=self._builder.drop_column(plan.table, plan.source_column), bucket=Phase.POST_DEPLOY,
            operation_id=plan.operation_id, plan_id=plan.plan_id, produces=LifecycleState.OLD_REMOVED,
            requires=requirement, references=refs,
            description=f"drop old column {plan.table}.{plan.source_column}"))
        return statements

    def resume(self, plan_id: str, operator: str, reason: str) -> List[PlannedStatement]:
        """Human-initiated unfreeze; returns the backfill statements to re-run before re-verifying."""
        plan = self.get(plan_id)
        if not plan.frozen:
            raise LifecycleTransitionError(f"plan {plan_id} is not frozen", plan_id=plan_id)
        plan.frozen = False
        plan.audit.append({"event": "resumed", "session": self._session, "operator": operator,
                           "reason": reason, "previous_reason": plan.frozen_reason})
        plan.frozen_reason = None
        self._track(plan)
        logger.warning(f"[LifecycleController] Plan {plan_id} resumed by {operator}: {reason}")
        return self._backfill_statements(plan)

    def compensate(self, plan_id: str, operator: str, reason: str) -> Tuple[ColumnLifecyclePlan, List[PlannedStatement]]:
        """
        Abandon a rename: supersede it, stop the sync trigger and drop the
        shadow column through a new DROP plan.
        """
        original = self.get(plan_id)
        self._require_kind(original, LifecycleKind.RENAME)
        if not original.active:
            raise LifecycleTransitionError(f"plan {plan_id} is no longer active", plan_id=plan_id)
        if original.reached(LifecycleState.SHADOW_ADDED) is None:
            raise LifecycleTransitionError(
                f"plan {plan_id} never added a shadow column; nothing to compensate", plan_id=plan_id
            )

        statements: List[PlannedStatement] = []
        function_name, trigger_name = self._sync_names(original)
        refs = ((original.table, original.target_column),)
        statements.append(PlannedStatement(
            sql=self._builder.drop_trigger(trigger_name, original.table), bucket=Phase.PRE_DEPLOY,
            operation_id=original.operation_id, plan_id=original.plan_id, references=refs,
            description=f"stop syncing into {original.target_column}"))
        statements.append(PlannedStatement(
            sql=self._builder.drop_function(function_name), bucket=Phase.PRE_DEPLOY,
            operation_id=original.operation_id, plan_id=original.plan_id, references=refs,
            description=f"drop sync function {function_name}"))

        undo = Operation(
            kind=OperationKind.DROP_COLUMN,
            table=original.table,
            columns=(original.target_column,),
            definition=original.column_type,
            operation_id=f"compensate-{original.plan_id}",
        )
        # superseded first so the shadow column is free for the compensating plan
        original.superseded_by = "pending"
        compensating = self.propose(undo, LifecycleKind.DROP)
        compensating.compensates = original.plan_id
        original.superseded_by = compensating.plan_id
        original.audit.append({"event": "compensated", "session": self._session, "operator": operator,
                               "reason": reason, "compensating_plan": compensating.plan_id})
        self._track(original)
        compensating.audit.append({"event": "created", "operator": operator, "reason": reason})
        statements.extend(self.expand(compensating, Phase.PRE_DEPLOY))
        statements.extend(self.expand(compensating, Phase.POST_DEPLOY))
        logger.warning(f"[LifecycleController] {operator} compensated {plan_id} with {compensating.plan_id}")
        return compensating, statements

    def _backfill_statements(self, plan: ColumnLifecyclePlan) -> List[PlannedStatement]:
        refs = ((plan.table, plan.source_column), (plan.table, plan.target_column))
        return [
            PlannedStatement(
                sql=self._builder.backfill_batch(plan.table, plan.source_column, plan.target_column, self._batch_size),
                bucket=Phase.PRE_DEPLOY,
                execution_mode=ExecutionMode.NON_TRANSACTIONAL,
                repeat_until_no_rows=True,
                operation_id=plan.operation_id,
                plan_id=plan.plan_id,
                produces=LifecycleState.BACKFILLING,
                requires=StateRequirement(plan.table, plan.source_column, LifecycleState.TRIGGER_INSTALLED,
                                          strictly_earlier_bucket=False, plan_id=plan.plan_id),
                references=refs,
                description=f"backfill {plan.target_column} in batches of {self._batch_size}; repeat until no rows change",
            ),
            PlannedStatement(
                sql=self._verifier.query_for(plan),
                bucket=Phase.PRE_DEPLOY,
                operation_id=plan.operation_id,
                plan_id=plan.plan_id,
                requires=StateRequirement(plan.table, plan.source_column, LifecycleState.BACKFILLING,
                                          strictly_earlier_bucket=False, plan_id=plan.plan_id),
                references=refs,
                description=f"verification query for {plan.plan_id}; report the result before post-deploy",
            ),
        ]

    def _statement(self, plan, sql, bucket, prior, produces=None, introduces=(), references=(), description=""):
        return PlannedStatement(
            sql=sql,
            bucket=bucket,
            operation_id=plan.operation_id,
            plan_id=plan.plan_id,
            produces=produces,
            requires=StateRequirement(plan.table, plan.source_column, prior,
                                      strictly_earlier_bucket=False, plan_id=plan.plan_id),
            introduces=introduces,
            references=references,
            description=description,
        )

    def _transition(self, plan: ColumnLifecyclePlan, state: LifecycleState, bucket: Phase, note: str = "") -> None:
        if plan.frozen:
            raise LifecycleTransitionError(
                f"plan {plan.plan_id} is frozen in {plan.state.value}: {plan.frozen_reason}", plan_id=plan.plan_id
            )
        if plan.superseded_by:
            raise LifecycleTransitionError(
                f"plan {plan.plan_id} was superseded by {plan.superseded_by}", plan_id=plan.plan_id
            )
        if plan.next_state != state:
            expected = plan.next_state.value if plan.next_state else "nothing (terminal)"
            raise LifecycleTransitionError(
                f"plan {plan.plan_id} cannot move from {plan.state.value} to {state.value}; next is {expected}",
                plan_id=plan.plan_id,
            )
        plan.record(state, self._session, bucket, note=note)
        self._track(plan)
        logger.debug(f"[LifecycleController] {plan.plan_id} -> {state.value} ({bucket.value})")

    def _require_kind(self, plan: ColumnLifecyclePlan, kind: LifecycleKind) -> None:
        if plan.kind != kind:
            raise LifecycleTransitionError(
                f"plan {plan.plan_id} is a {plan.kind.value} plan; step needs {kind.value}", plan_id=plan.plan_id
            )

    def _sync_names(self, plan: ColumnLifecyclePlan) -> Tuple[str, str]:
        return (
            self._naming.function_name(plan.table, plan.source_column, plan.target_column),
            self._naming.trigger_name(plan.table, plan.source_column, plan.target_column),
        )

    def _new_plan_id(self, kind: LifecycleKind, table: str, column: str) -> str:
        base = f"{kind.value}-{table}-{column}-s{self._session}"
        plan_id, n = base, 1
        while plan_id in self._plans:
            n += 1
            plan_id = f"{base}-{n}"
        return plan_id

    def _track(self, plan: ColumnLifecyclePlan) -> None:
        self._plans[plan.plan_id] = plan
        self._dirty.add(plan.plan_id)

    def _load(self) -> None:
        self._plans = {p.plan_id: copy.deepcopy(p) for p in self._repository.list_plans()}
        self._dirty = set()
