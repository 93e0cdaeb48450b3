from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple
import heapq
import logging

from safe_migrate.domain.entities.lifecycle import ColumnLifecyclePlan
from safe_migrate.domain.entities.operation import Phase
from safe_migrate.domain.entities.verdict import PhaseBucket, PlannedStatement, StateRequirement
from safe_migrate.domain.errors import SchedulingCycleError

logger = logging.getLogger(__name__)


@dataclass
class ScheduledBuckets:
    pre_deploy: PhaseBucket
    post_deploy: PhaseBucket


class PhaseScheduler:
    """
    Buckets statements into pre- and post-deploy and orders each bucket.
    Single Responsibility: ordering and cross-bucket dependency checks.
    """

    def schedule(
        self,
        statements: List[PlannedStatement],
        plans: List[ColumnLifecyclePlan],
        session: int,
    ) -> ScheduledBuckets:
        """
        Keep submission order within a bucket unless a statement must follow the
        statement producing the lifecycle state or object it depends on.
        """
        resolved: Dict[int, str] = {}
        for index, statement in enumerate(statements):
            if statement.requires:
                plan = self._check_requirement(statement, plans, session)
                resolved[index] = plan.plan_id

        self._check_introductions(statements)

        buckets = {}
        for phase in (Phase.PRE_DEPLOY, Phase.POST_DEPLOY):
            members = [i for i, s in enumerate(statements) if s.bucket == phase]
            ordered = self._order(statements, members, resolved)
            buckets[phase] = PhaseBucket(phase=phase, statements=[statements[i] for i in ordered])
            logger.info(f"[PhaseScheduler] {phase.value}: {len(ordered)} statement(s)")

        return ScheduledBuckets(pre_deploy=buckets[Phase.PRE_DEPLOY], post_deploy=buckets[Phase.POST_DEPLOY])

    def _resolve_plan(self, requirement: StateRequirement, plans: List[ColumnLifecyclePlan]) -> Optional[ColumnLifecyclePlan]:
        if requirement.plan_id:
            for plan in plans:
                if plan.plan_id == requirement.plan_id:
                    return plan
            return None
        # Finished plans and plans that only introduce the column never gate its removal.
        for plan in plans:
            if plan.active and plan.table == requirement.table and plan.source_column == requirement.column:
                return plan
        return None

    def _check_requirement(
        self, statement: PlannedStatement, plans: List[ColumnLifecyclePlan], session: int
    ) -> ColumnLifecyclePlan:
        requirement = statement.requires
        target = f"{requirement.table}.{requirement.column}"
        plan = self._resolve_plan(requirement, plans)
        if plan is None:
            raise SchedulingCycleError(
                f"{statement.bucket.value} statement '{statement.sql}' depends on a lifecycle plan "
                f"for {target} that was never proposed",
                operation_id=statement.operation_id,
            )

        transition = plan.reached(requirement.state)
        if transition is None:
            raise SchedulingCycleError(
                f"{statement.bucket.value} statement '{statement.sql}' needs plan {plan.plan_id} in "
                f"{requirement.state.value}, which it has not reached (currently {plan.state.value})",
                plan_id=plan.plan_id,
                operation_id=statement.operation_id,
            )

        position = (session, statement.bucket.order)
        if requirement.strictly_earlier_bucket and transition.position >= position:
            raise SchedulingCycleError(
                f"{statement.bucket.value} statement '{statement.sql}' needs plan {plan.plan_id} to reach "
                f"{requirement.state.value} in a strictly earlier bucket",
                plan_id=plan.plan_id,
                operation_id=statement.operation_id,
            )
        if transition.position > position:
            raise SchedulingCycleError(
                f"{statement.bucket.value} statement '{statement.sql}' depends on state "
                f"{requirement.state.value} reached only in a later bucket",
                plan_id=plan.plan_id,
                operation_id=statement.operation_id,
            )
        return plan

    def _check_introductions(self, statements: List[PlannedStatement]) -> None:
        """No pre-deploy statement may use a table or column introduced only post-deploy."""
        introduced: Dict[Tuple[str, Optional[str]], Set[Phase]] = {}
        for statement in statements:
            for obj in statement.introduces:
                introduced.setdefault(obj, set()).add(statement.bucket)

        for statement in statements:
            if statement.bucket != Phase.PRE_DEPLOY:
                continue
            for table, column in statement.references:
                for obj in ((table, column), (table, None)):
                    phases = introduced.get(obj)
                    if phases and Phase.PRE_DEPLOY not in phases:
                        name = obj[0] if obj[1] is None else f"{obj[0]}.{obj[1]}"
                        raise SchedulingCycleError(
                            f"pre_deploy statement '{statement.sql}' references {name}, "
                            f"which is only introduced post-deploy",
                            operation_id=statement.operation_id,
                        )

    def _order(self, statements: List[PlannedStatement], members: List[int], resolved: Dict[int, str]) -> List[int]:
        """Stable topological sort; ties go to the earliest submitted statement."""
        edges: Dict[int, Set[int]] = {i: set() for i in members}
        indegree: Dict[int, int] = {i: 0 for i in members}

        def add_edge(before: int, after: int) -> None:
            if before != after and after not in edges[before]:
                edges[before].add(after)
                indegree[after] += 1

        for i in members:
            statement = statements[i]
            requirement = statement.requires
            if requirement and not requirement.strictly_earlier_bucket:
                for j in members:
                    other = statements[j]
                    if other.plan_id == resolved[i] and other.produces == requirement.state:
                        add_edge(j, i)
            for obj in statement.references:
                for j in members:
                    introduces = statements[j].introduces
                    if obj in introduces or (obj[0], None) in introduces:
                        add_edge(j, i)

        ready = [i for i in members if indegree[i] == 0]
        heapq.heapify(ready)
        ordered = []
        while ready:
            i = heapq.heappop(ready)
            ordered.append(i)
            for j in edges[i]:
                indegree[j] -= 1
                if indegree[j] == 0:
                    heapq.heappush(ready, j)

        if len(ordered) != len(members):
            stuck = [statements[i].sql for i in members if i not in ordered]
            raise SchedulingCycleError(f"dependency cycle between statements: {stuck}")
        return ordered
