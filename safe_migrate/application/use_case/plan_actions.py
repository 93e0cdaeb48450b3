"""Use case for human-initiated actions on lifecycle plans."""
from typing import Callable, List
import logging

from safe_migrate.application.dtos.migration_dto import PlanActionRequest
from safe_migrate.domain.entities.verdict import MigrationReport, PlannedStatement
from safe_migrate.domain.errors import MigrationSafetyError
from safe_migrate.domain.services.lifecycle_controller import ColumnLifecycleController
from safe_migrate.domain.services.phase_scheduler import PhaseScheduler
from safe_migrate.domain.services.verdict_reporter import VerdictReporter

logger = logging.getLogger(__name__)


class PlanActionUseCase:
    """
    Use case: resume a frozen plan or compensate an abandoned rename.
    These are never triggered automatically.
    """

    def __init__(
        self,
        controller: ColumnLifecycleController,
        scheduler: PhaseScheduler,
        reporter: VerdictReporter,
    ):
        self._controller = controller
        self._scheduler = scheduler
        self._reporter = reporter

    def resume(self, request: PlanActionRequest) -> MigrationReport:
        return self._run(lambda: self._controller.resume(request.plan_id, request.operator, request.reason))

    def compensate(self, request: PlanActionRequest) -> MigrationReport:
        return self._run(
            lambda: self._controller.compensate(request.plan_id, request.operator, request.reason)[1]
        )

    def _run(self, action: Callable[[], List[PlannedStatement]]) -> MigrationReport:
        session = self._controller.begin_session()
        errors: List[MigrationSafetyError] = []
        buckets = None
        try:
            statements = action()
            buckets = self._scheduler.schedule(statements, self._controller.plans, session)
        except MigrationSafetyError as e:
            logger.error(f"[PlanAction] {type(e).__name__}: {e}")
            errors.append(e)

        report = self._reporter.build([], buckets, self._controller.plans, errors, session)
        if report.ok:
            self._controller.commit()
        else:
            self._controller.rollback()
        return report
