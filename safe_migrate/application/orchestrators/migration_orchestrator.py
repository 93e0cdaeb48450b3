"""Main orchestrator for the planning process."""
from typing import Dict, Any, List
import logging

from safe_migrate.application.dtos.migration_dto import MigrationRequest, PlanActionRequest
from safe_migrate.application.use_case.plan_actions import PlanActionUseCase
from safe_migrate.application.use_case.plan_migration import PlanMigrationUseCase
from safe_migrate.domain.entities.verdict import MigrationReport
from safe_migrate.domain.repositories.interfaces import IPlanRepository

logger = logging.getLogger(__name__)


class MigrationOrchestrator:
    """
    Main orchestrator coordinating planning and plan actions.
    Single Responsibility: Coordinate use cases and present results.
    """

    def __init__(
        self,
        plan_use_case: PlanMigrationUseCase,
        action_use_case: PlanActionUseCase,
        plan_repository: IPlanRepository,
    ):
        self._plan = plan_use_case
        self._actions = action_use_case
        self._plans = plan_repository

    def process(self, request: MigrationRequest) -> MigrationReport:
        """Process one migration batch."""
        logger.info(f"[Orchestrator] Planning {len(request.operations)} operation(s)")
        report = self._plan.execute(request)
        if report.ok:
            logger.info("[Orchestrator] Batch accepted")
        else:
            for line in report.diagnostics:
                logger.warning(f"[Orchestrator] {line}")
        return report

    def resume(self, request: PlanActionRequest) -> MigrationReport:
        logger.info(f"[Orchestrator] {request.operator} resuming {request.plan_id}")
        return self._actions.resume(request)

    def compensate(self, request: PlanActionRequest) -> MigrationReport:
        logger.info(f"[Orchestrator] {request.operator} compensating {request.plan_id}")
        return self._actions.compensate(request)

    def list_plans(self) -> List[Dict[str, Any]]:
        return [p.summary() for p in self._plans.list_plans()]
