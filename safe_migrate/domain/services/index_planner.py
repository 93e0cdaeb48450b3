from typing import List
import logging

from safe_migrate.domain.entities.operation import IndexSpec, Operation, Phase, ExecutionMode
from safe_migrate.domain.entities.rules import NamingConvention
from safe_migrate.domain.entities.verdict import IndexOperationPlan, PlannedStatement
from safe_migrate.domain.services.migration_builder import MigrationBuilder, quote_ident

logger = logging.getLogger(__name__)


class ConcurrentIndexPlanner:
    """
    Plans index (re)creation that can be re-run after a partial failure.
    An interrupted CREATE INDEX CONCURRENTLY leaves an invalid index behind,
    so every plan drops the name first, whether or not it exists.
    """

    def __init__(self, builder: MigrationBuilder, naming: NamingConvention):
        self._builder = builder
        self._naming = naming

    def plan(self, spec: IndexSpec) -> IndexOperationPlan:
        name = spec.name or self._naming.index_name(spec.table, spec.columns, spec.unique)
        expression = ", ".join(quote_ident(c) for c in spec.columns)
        drop_sql = self._builder.index_drop(name)
        create_sql = self._builder.index_create(name, spec.table, expression, spec.unique, spec.where)
        logger.debug(f"[ConcurrentIndexPlanner] Planned {name} on {spec.table}({expression})")
        return IndexOperationPlan(
            index_name=name,
            table=spec.table,
            expression=expression,
            unique=spec.unique,
            where=spec.where,
            statements=(drop_sql, create_sql),
            execution_mode=ExecutionMode.NON_TRANSACTIONAL,
        )

    def spec_for(self, operation: Operation) -> IndexSpec:
        return IndexSpec(
            table=operation.table,
            columns=tuple(operation.columns),
            name=operation.index_name,
            unique=operation.unique,
            where=operation.where,
        )

    def statements_for(self, operation: Operation, bucket: Phase) -> List[PlannedStatement]:
        """Expand an add-index operation into its bucketed statement pair."""
        plan = self.plan(self.spec_for(operation))
        references = tuple((operation.table, c) for c in operation.columns) or ((operation.table, None),)
        drop_sql, create_sql = plan.statements
        return [
            PlannedStatement(
                sql=drop_sql,
                bucket=bucket,
                execution_mode=plan.execution_mode,
                operation_id=operation.operation_id,
                references=references,
                description=f"drop leftover index {plan.index_name} if a previous build failed",
            ),
            PlannedStatement(
                sql=create_sql,
                bucket=bucket,
                execution_mode=plan.execution_mode,
                operation_id=operation.operation_id,
                references=references,
                description=f"build index {plan.index_name} concurrently",
            ),
        ]

    def drop_statement(self, operation: Operation, bucket: Phase) -> PlannedStatement:
        return PlannedStatement(
            sql=self._builder.index_drop(operation.index_name),
            bucket=bucket,
            execution_mode=ExecutionMode.NON_TRANSACTIONAL,
            operation_id=operation.operation_id,
            references=((operation.table, None),) if operation.table else (),
            description=f"drop index {operation.index_name}",
        )
