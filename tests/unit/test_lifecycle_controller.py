"""Unit tests for ColumnLifecycleController."""

import unittest

from safe_migrate.domain.entities.lifecycle import LifecycleKind, LifecycleState
from safe_migrate.domain.entities.operation import ExecutionMode, Phase
from safe_migrate.domain.errors import (
    LifecycleConflictError, LifecycleTransitionError, PlanNotFoundError, VerificationMismatchError,
)
from safe_migrate.infrastructure.repositories.plan_repository import InMemoryPlanRepository
from tests.fixtures.test_data import TestDataFactory


class TestDropLifecycle(unittest.TestCase):

    def setUp(self):
        self.repository = InMemoryPlanRepository()
        self.controller = TestDataFactory.create_controller(self.repository)
        self.controller.begin_session()

    def test_drop_plan_follows_reduced_path(self):
        # Arrange
        plan = self.controller.propose(TestDataFactory.create_drop_column(), LifecycleKind.DROP)

        # Act
        pre = self.controller.expand(plan, Phase.PRE_DEPLOY)
        post = self.controller.expand(plan, Phase.POST_DEPLOY)

        # Assert
        self.assertEqual(plan.plan_id, "drop-users-legacy_flag-s1")
        self.assertEqual(plan.visited, [
            LifecycleState.PROPOSED, LifecycleState.READONLY_MARKED, LifecycleState.OLD_REMOVED,
        ])
        self.assertEqual(TestDataFactory.sql_of(pre), [
            "COMMENT ON COLUMN users.legacy_flag IS "
            "'readonly: scheduled for removal by lifecycle plan drop-users-legacy_flag-s1'",
        ])
        self.assertEqual(TestDataFactory.sql_of(post), ["ALTER TABLE users DROP COLUMN IF EXISTS legacy_flag"])
        self.assertEqual(post[0].requires.state, LifecycleState.READONLY_MARKED)
        self.assertTrue(post[0].requires.strictly_earlier_bucket)

    def test_drop_plan_cannot_add_shadow_column(self):
        plan = self.controller.propose(TestDataFactory.create_drop_column(), LifecycleKind.DROP)
        self.controller.mark_readonly(plan)

        with self.assertRaises(LifecycleTransitionError):
            self.controller.add_shadow_column(plan)

    def test_remove_before_gate_is_refused(self):
        plan = self.controller.propose(TestDataFactory.create_drop_column(), LifecycleKind.DROP)

        with self.assertRaises(LifecycleTransitionError):
            self.controller.remove_old_column(plan)
        self.assertEqual(plan.state, LifecycleState.PROPOSED)


class TestRenameLifecycle(unittest.TestCase):

    def setUp(self):
        self.repository = InMemoryPlanRepository()
        self.controller = TestDataFactory.create_controller(self.repository, batch_size=1000)
        self.controller.begin_session()
        self.plan = self.controller.propose(TestDataFactory.create_rename_column(), LifecycleKind.RENAME)

    def test_pre_deploy_expansion_stops_at_backfilling(self):
        # Act
        statements = self.controller.expand(self.plan, Phase.PRE_DEPLOY)

        # Assert
        self.assertEqual(self.plan.state, LifecycleState.BACKFILLING)
        self.assertEqual(len(statements), 7)
        sql = TestDataFactory.sql_of(statements)
        self.assertTrue(sql[0].startswith("COMMENT ON COLUMN users.name IS"))
        self.assertEqual(sql[1], "ALTER TABLE users ADD COLUMN IF NOT EXISTS full_name text")
        self.assertIn("NEW.full_name := NEW.name;", sql[2])
        self.assertEqual(sql[3], "DROP TRIGGER IF EXISTS trg_sync_users_name_to_full_name ON users")
        self.assertEqual(
            sql[4],
            "CREATE TRIGGER trg_sync_users_name_to_full_name BEFORE INSERT OR UPDATE OF name ON users "
            "FOR EACH ROW EXECUTE FUNCTION fn_sync_users_name_to_full_name()",
        )
        self.assertIn("LIMIT 1000", sql[5])
        self.assertIn("IS DISTINCT FROM", sql[6])

        backfill = statements[5]
        self.assertTrue(backfill.repeat_until_no_rows)
        self.assertEqual(backfill.execution_mode, ExecutionMode.NON_TRANSACTIONAL)
        self.assertTrue(all(s.bucket == Phase.PRE_DEPLOY for s in statements))

    def test_verified_backfill_unlocks_removal(self):
        self.controller.expand(self.plan, Phase.PRE_DEPLOY)

        self.controller.verify_backfill(self.plan, TestDataFactory.create_matching_snapshot())
        statements = self.controller.expand(self.plan, Phase.POST_DEPLOY)

        self.assertEqual(self.plan.state, LifecycleState.OLD_REMOVED)
        self.assertEqual(TestDataFactory.sql_of(statements), [
            "DROP TRIGGER IF EXISTS trg_sync_users_name_to_full_name ON users",
            "DROP FUNCTION IF EXISTS fn_sync_users_name_to_full_name()",
            "ALTER TABLE users DROP COLUMN IF EXISTS name",
        ])
        for statement in statements:
            self.assertEqual(statement.requires.state, LifecycleState.BACKFILL_VERIFIED)

    def test_checksum_mismatch_freezes_plan_in_backfilling(self):
        """Test that a failed verification raises and leaves the plan frozen where it was."""
        # Arrange
        self.controller.expand(self.plan, Phase.PRE_DEPLOY)

        # Act
        with self.assertRaises(VerificationMismatchError) as ctx:
            self.controller.verify_backfill(self.plan, TestDataFactory.create_mismatched_snapshot())

        # Assert
        self.assertEqual(ctx.exception.plan_id, self.plan.plan_id)
        self.assertEqual(self.plan.state, LifecycleState.BACKFILLING)
        self.assertTrue(self.plan.frozen)
        stored = self.repository.get_plan(self.plan.plan_id)
        self.assertTrue(stored.frozen)
        self.assertEqual(stored.state, LifecycleState.BACKFILLING)

    def test_frozen_plan_rejects_transitions(self):
        self.controller.expand(self.plan, Phase.PRE_DEPLOY)
        with self.assertRaises(VerificationMismatchError):
            self.controller.verify_backfill(self.plan, TestDataFactory.create_mismatched_snapshot())

        with self.assertRaises(LifecycleTransitionError):
            self.controller.verify_backfill(self.plan, TestDataFactory.create_matching_snapshot())
        with self.assertRaises(LifecycleTransitionError):
            self.controller.remove_old_column(self.plan)

    def test_resume_unfreezes_and_reemits_backfill(self):
        self.controller.expand(self.plan, Phase.PRE_DEPLOY)
        with self.assertRaises(VerificationMismatchError):
            self.controller.verify_backfill(self.plan, TestDataFactory.create_mismatched_snapshot())

        statements = self.controller.resume(self.plan.plan_id, "dba@example.com", "fixed trigger")
        plan = self.controller.get(self.plan.plan_id)

        self.assertFalse(plan.frozen)
        self.assertEqual(plan.state, LifecycleState.BACKFILLING)
        self.assertEqual(plan.audit[-1]["event"], "resumed")
        self.assertEqual(plan.audit[-1]["operator"], "dba@example.com")
        self.assertEqual(len(statements), 2)
        self.assertTrue(statements[0].repeat_until_no_rows)

    def test_resume_requires_frozen_plan(self):
        with self.assertRaises(LifecycleTransitionError):
            self.controller.resume(self.plan.plan_id, "dba", "nothing to do")

    def test_unknown_plan(self):
        with self.assertRaises(PlanNotFoundError):
            self.controller.get("rename-users-missing-s9")

    def test_compensate_drops_shadow_column_through_new_plan(self):
        self.controller.expand(self.plan, Phase.PRE_DEPLOY)

        compensating, statements = self.controller.compensate(self.plan.plan_id, "dba", "rename abandoned")
        original = self.controller.get(self.plan.plan_id)

        self.assertEqual(original.superseded_by, compensating.plan_id)
        self.assertFalse(original.active)
        self.assertEqual(compensating.kind, LifecycleKind.DROP)
        self.assertEqual(compensating.source_column, "full_name")
        self.assertEqual(compensating.compensates, self.plan.plan_id)
        self.assertEqual(compensating.state, LifecycleState.OLD_REMOVED)
        sql = TestDataFactory.sql_of(statements)
        self.assertEqual(sql[0], "DROP TRIGGER IF EXISTS trg_sync_users_name_to_full_name ON users")
        self.assertEqual(sql[1], "DROP FUNCTION IF EXISTS fn_sync_users_name_to_full_name()")
        self.assertEqual(sql[-1], "ALTER TABLE users DROP COLUMN IF EXISTS full_name")

    def test_superseded_plan_rejects_transitions(self):
        self.controller.expand(self.plan, Phase.PRE_DEPLOY)
        self.controller.compensate(self.plan.plan_id, "dba", "rename abandoned")

        with self.assertRaises(LifecycleTransitionError):
            self.controller.verify_backfill(self.plan, TestDataFactory.create_matching_snapshot())

    def test_second_plan_on_same_column_conflicts(self):
        with self.assertRaises(LifecycleConflictError):
            self.controller.propose(TestDataFactory.create_drop_column_named("name"), LifecycleKind.DROP)
        with self.assertRaises(LifecycleConflictError):
            self.controller.propose(TestDataFactory.create_drop_column_named("full_name"), LifecycleKind.DROP)

    def test_states_cannot_be_skipped_or_repeated(self):
        self.controller.mark_readonly(self.plan)

        with self.assertRaises(LifecycleTransitionError):
            self.controller.mark_readonly(self.plan)
        with self.assertRaises(LifecycleTransitionError):
            self.controller.start_backfill(self.plan)
        with self.assertRaises(ValueError):
            self.plan.record(LifecycleState.PROPOSED, 1, None)

    def test_rollback_discards_working_copies(self):
        self.controller.rollback()

        self.assertEqual(self.controller.plans, [])
        self.assertEqual(self.repository.list_plans(), [])

    def test_commit_persists_plans(self):
        self.controller.expand(self.plan, Phase.PRE_DEPLOY)

        self.controller.commit()
        stored = self.repository.get_plan(self.plan.plan_id)

        self.assertEqual(stored.state, LifecycleState.BACKFILLING)
        self.assertEqual(stored.history[-1].session, 1)
