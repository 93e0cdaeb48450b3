"""Dependency Injection Container."""

from typing import Optional
import os
import logging

logger = logging.getLogger(__name__)


class DIContainer:
    """
    Dependency Injection Container.
    Follows Dependency Inversion Principle.
    """

    def __init__(self):
        self._connection_string: Optional[str] = os.getenv("DATABASE_URL")
        self._rules_file: Optional[str] = os.getenv("SAFE_MIGRATE_RULES_FILE")
        self._plan_store: Optional[str] = os.getenv("SAFE_MIGRATE_PLAN_STORE")
        self._dialect: str = "postgresql"
        self._services = {}

    def configure(
        self,
        connection_string: Optional[str] = None,
        rules_file: Optional[str] = None,
        plan_store: Optional[str] = None,
        dialect: str = "postgresql",
    ):
        """Configure the container; arguments left as None keep the environment values."""
        if connection_string:
            self._connection_string = connection_string
        if rules_file:
            self._rules_file = rules_file
        if plan_store:
            self._plan_store = plan_store
        self._dialect = dialect
        self._services = {}

    def get_rule_table(self):
        """Get the active rule table, with environment overrides applied."""
        if "rule_table" not in self._services:
            from dataclasses import replace
            from safe_migrate.infrastructure.repositories.rule_repository import RuleRepository

            table = RuleRepository(self._rules_file).get_rule_table()
            batch_size = os.getenv("SAFE_MIGRATE_BATCH_SIZE")
            sample_percent = os.getenv("SAFE_MIGRATE_SAMPLE_PERCENT")
            if batch_size:
                table = replace(table, backfill_batch_size=int(batch_size))
            if sample_percent:
                table = replace(table, verification_sample_percent=int(sample_percent))
            self._services["rule_table"] = table
            logger.info(f"[DIContainer] Using rule table {table.version}")

        return self._services["rule_table"]

    def get_migration_builder(self):
        """Get migration builder."""
        if "migration_builder" not in self._services:
            from safe_migrate.domain.services.migration_builder import MigrationBuilder
            self._services["migration_builder"] = MigrationBuilder(self._dialect)

        return self._services["migration_builder"]

    def get_classifier(self):
        """Get statement classifier."""
        if "classifier" not in self._services:
            from safe_migrate.domain.services.statement_classifier import StatementClassifier
            from safe_migrate.infrastructure.parsers.sql_operation_parser import SQLOperationParser
            from safe_migrate.infrastructure.validators.sql_validator import SQLValidator

            self._services["classifier"] = StatementClassifier(
                self.get_rule_table(), SQLValidator(self._dialect), SQLOperationParser()
            )

        return self._services["classifier"]

    def get_plan_repository(self):
        """Get plan repository; a JSON file when a plan store is configured."""
        if "plan_repository" not in self._services:
            from safe_migrate.infrastructure.repositories.plan_repository import (
                InMemoryPlanRepository, JsonPlanRepository
            )

            if self._plan_store:
                self._services["plan_repository"] = JsonPlanRepository(self._plan_store)
            else:
                logger.warning("[DIContainer] No plan store configured; lifecycle plans will not outlive this process")
                self._services["plan_repository"] = InMemoryPlanRepository()

        return self._services["plan_repository"]

    def get_backfill_verifier(self):
        """Get backfill verifier."""
        if "backfill_verifier" not in self._services:
            from safe_migrate.domain.services.backfill_verifier import BackfillVerifier
            self._services["backfill_verifier"] = BackfillVerifier(
                self.get_migration_builder(), self.get_rule_table().verification_sample_percent
            )

        return self._services["backfill_verifier"]

    def get_lifecycle_controller(self):
        """Get column lifecycle controller."""
        if "lifecycle_controller" not in self._services:
            from safe_migrate.domain.services.lifecycle_controller import ColumnLifecycleController

            rules = self.get_rule_table()
            self._services["lifecycle_controller"] = ColumnLifecycleController(
                builder=self.get_migration_builder(),
                naming=rules.naming,
                verifier=self.get_backfill_verifier(),
                repository=self.get_plan_repository(),
                batch_size=rules.backfill_batch_size,
            )

        return self._services["lifecycle_controller"]

    def get_index_planner(self):
        """Get concurrent index planner."""
        if "index_planner" not in self._services:
            from safe_migrate.domain.services.index_planner import ConcurrentIndexPlanner
            self._services["index_planner"] = ConcurrentIndexPlanner(
                self.get_migration_builder(), self.get_rule_table().naming
            )

        return self._services["index_planner"]

    def get_verification_probe(self):
        """Get database verification probe."""
        if "verification_probe" not in self._services:
            if not self._connection_string:
                raise ValueError("A database connection is required; pass --connection or set DATABASE_URL")
            from safe_migrate.infrastructure.database.verification_probe import PostgresVerificationProbe
            self._services["verification_probe"] = PostgresVerificationProbe(self._connection_string)

        return self._services["verification_probe"]

    def get_orchestrator(self):
        """Get migration orchestrator."""
        if "orchestrator" not in self._services:
            from safe_migrate.application.orchestrators.migration_orchestrator import MigrationOrchestrator
            from safe_migrate.application.use_case.plan_actions import PlanActionUseCase
            from safe_migrate.application.use_case.plan_migration import PlanMigrationUseCase
            from safe_migrate.domain.services.phase_scheduler import PhaseScheduler
            from safe_migrate.domain.services.verdict_reporter import VerdictReporter

            rules = self.get_rule_table()
            scheduler = PhaseScheduler()
            controller = self.get_lifecycle_controller()

            plan_use_case = PlanMigrationUseCase(
                classifier=self.get_classifier(),
                controller=controller,
                index_planner=self.get_index_planner(),
                scheduler=scheduler,
                builder=self.get_migration_builder(),
                naming=rules.naming,
            )
            action_use_case = PlanActionUseCase(
                controller=controller,
                scheduler=scheduler,
                reporter=VerdictReporter(strict=rules.strict, rule_table_version=rules.version),
            )
            self._services["orchestrator"] = MigrationOrchestrator(
                plan_use_case, action_use_case, self.get_plan_repository()
            )

        return self._services["orchestrator"]
