"""Unit tests for PhaseScheduler."""

import unittest

from safe_migrate.domain.entities.lifecycle import LifecycleKind, LifecycleState
from safe_migrate.domain.entities.operation import Phase
from safe_migrate.domain.entities.verdict import PlannedStatement, StateRequirement
from safe_migrate.domain.errors import SchedulingCycleError
from safe_migrate.domain.services.phase_scheduler import PhaseScheduler
from safe_migrate.infrastructure.repositories.plan_repository import InMemoryPlanRepository
from tests.fixtures.test_data import TestDataFactory


class TestPhaseScheduler(unittest.TestCase):

    def setUp(self):
        self.scheduler = PhaseScheduler()

    def test_post_deploy_drop_without_plan_is_rejected(self):
        """Test that a removal depending on a never-proposed plan cannot be scheduled."""
        # Arrange
        drop = PlannedStatement(
            sql="ALTER TABLE users DROP COLUMN IF EXISTS legacy_flag",
            bucket=Phase.POST_DEPLOY,
            requires=StateRequirement("users", "legacy_flag", LifecycleState.READONLY_MARKED),
        )

        # Act / Assert
        with self.assertRaises(SchedulingCycleError) as ctx:
            self.scheduler.schedule([drop], [], session=1)
        self.assertIn("never proposed", str(ctx.exception))

    def test_buckets_keep_submission_order(self):
        statements = [
            PlannedStatement(sql="SELECT 1", bucket=Phase.PRE_DEPLOY),
            PlannedStatement(sql="SELECT 2", bucket=Phase.POST_DEPLOY),
            PlannedStatement(sql="SELECT 3", bucket=Phase.PRE_DEPLOY),
        ]

        buckets = self.scheduler.schedule(statements, [], session=1)

        self.assertEqual(buckets.pre_deploy.sql, ["SELECT 1", "SELECT 3"])
        self.assertEqual(buckets.post_deploy.sql, ["SELECT 2"])

    def test_statement_moves_after_the_column_it_uses(self):
        index = PlannedStatement(sql="CREATE INDEX CONCURRENTLY idx_users_nickname ON users (nickname)",
                                 bucket=Phase.PRE_DEPLOY, references=(("users", "nickname"),))
        column = PlannedStatement(sql="ALTER TABLE users ADD COLUMN IF NOT EXISTS nickname text",
                                  bucket=Phase.PRE_DEPLOY, introduces=(("users", "nickname"),))

        buckets = self.scheduler.schedule([index, column], [], session=1)

        self.assertEqual(buckets.pre_deploy.statements, [column, index])

    def test_pre_deploy_cannot_use_post_deploy_objects(self):
        table = PlannedStatement(sql="CREATE TABLE IF NOT EXISTS audit (id bigint)",
                                 bucket=Phase.POST_DEPLOY, introduces=(("audit", None),))
        insert = PlannedStatement(sql="INSERT INTO audit VALUES (1)",
                                  bucket=Phase.PRE_DEPLOY, references=(("audit", None),))

        with self.assertRaises(SchedulingCycleError):
            self.scheduler.schedule([table, insert], [], session=1)

    def test_mutual_dependency_is_a_cycle(self):
        a = PlannedStatement(sql="A", bucket=Phase.PRE_DEPLOY,
                             introduces=(("t", "a"),), references=(("t", "b"),))
        b = PlannedStatement(sql="B", bucket=Phase.PRE_DEPLOY,
                             introduces=(("t", "b"),), references=(("t", "a"),))

        with self.assertRaises(SchedulingCycleError):
            self.scheduler.schedule([a, b], [], session=1)

    def test_gate_must_be_reached_in_strictly_earlier_bucket(self):
        controller = TestDataFactory.create_controller()
        session = controller.begin_session()
        plan = controller.propose(TestDataFactory.create_drop_column(), LifecycleKind.DROP)
        pre = controller.expand(plan, Phase.PRE_DEPLOY)
        post = controller.expand(plan, Phase.POST_DEPLOY)

        # same removal, but placed in the bucket that marked the column read-only
        misplaced = PlannedStatement(sql=post[0].sql, bucket=Phase.PRE_DEPLOY, requires=post[0].requires)

        buckets = self.scheduler.schedule(pre + post, controller.plans, session)
        self.assertEqual(len(buckets.pre_deploy.statements), 1)
        self.assertEqual(len(buckets.post_deploy.statements), 1)
        with self.assertRaises(SchedulingCycleError):
            self.scheduler.schedule(pre + [misplaced], controller.plans, session)

    def test_rename_steps_are_ordered_by_state(self):
        controller = TestDataFactory.create_controller()
        session = controller.begin_session()
        plan = controller.propose(TestDataFactory.create_rename_column(), LifecycleKind.RENAME)
        statements = controller.expand(plan, Phase.PRE_DEPLOY)

        # backfill and verification submitted ahead of the steps they depend on
        shuffled = statements[5:] + statements[:5]
        buckets = self.scheduler.schedule(shuffled, controller.plans, session)

        self.assertEqual(buckets.pre_deploy.statements, statements)

    def _removal_of(self, column):
        return PlannedStatement(
            sql=f"ALTER TABLE users DROP COLUMN IF EXISTS {column}",
            bucket=Phase.POST_DEPLOY,
            requires=StateRequirement("users", column, LifecycleState.READONLY_MARKED, strictly_earlier_bucket=True),
        )

    def test_finished_drop_plan_does_not_cover_readded_column(self):
        """Test that a column re-added after its drop plan finished needs a fresh plan."""
        # Arrange
        controller = TestDataFactory.create_controller(InMemoryPlanRepository())
        controller.begin_session()
        plan = controller.propose(TestDataFactory.create_drop_column(), LifecycleKind.DROP)
        controller.expand(plan, Phase.PRE_DEPLOY)
        controller.expand(plan, Phase.POST_DEPLOY)
        controller.commit()
        session = controller.begin_session()

        # Act / Assert
        self.assertEqual(controller.get(plan.plan_id).state, LifecycleState.OLD_REMOVED)
        with self.assertRaises(SchedulingCycleError) as ctx:
            self.scheduler.schedule([self._removal_of("legacy_flag")], controller.plans, session)
        self.assertIn("never proposed", str(ctx.exception))

    def test_rename_target_is_not_covered_by_the_rename_plan(self):
        """Test that dropping the new column of a finished rename has no plan to lean on."""
        controller = TestDataFactory.create_controller(InMemoryPlanRepository())
        controller.begin_session()
        plan = controller.propose(TestDataFactory.create_rename_column(), LifecycleKind.RENAME)
        controller.expand(plan, Phase.PRE_DEPLOY)
        controller.commit()

        controller.begin_session()
        plan = controller.get(plan.plan_id)
        controller.verify_backfill(plan, TestDataFactory.create_matching_snapshot())
        controller.remove_old_column(plan)
        controller.commit()
        session = controller.begin_session()

        self.assertEqual(controller.get(plan.plan_id).state, LifecycleState.OLD_REMOVED)
        with self.assertRaises(SchedulingCycleError) as ctx:
            self.scheduler.schedule([self._removal_of("full_name")], controller.plans, session)
        self.assertIn("never proposed", str(ctx.exception))
