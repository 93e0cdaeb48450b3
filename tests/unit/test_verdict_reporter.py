"""Unit tests for VerdictReporter."""

import unittest

from safe_migrate.domain.entities.operation import Phase
from safe_migrate.domain.entities.verdict import PhaseBucket, PlannedStatement
from safe_migrate.domain.errors import SchedulingCycleError, UnsafeOperationError
from safe_migrate.domain.services.phase_scheduler import ScheduledBuckets
from safe_migrate.domain.services.statement_classifier import StatementClassifier
from safe_migrate.domain.services.verdict_reporter import VerdictReporter
from safe_migrate.infrastructure.repositories.rule_repository import RuleRepository
from tests.fixtures.test_data import TestDataFactory


class TestVerdictReporter(unittest.TestCase):

    def setUp(self):
        self.classifier = StatementClassifier(RuleRepository().get_rule_table())
        self.buckets = ScheduledBuckets(
            pre_deploy=PhaseBucket(Phase.PRE_DEPLOY, [
                PlannedStatement(sql="ALTER TABLE users ADD COLUMN IF NOT EXISTS nickname text",
                                 bucket=Phase.PRE_DEPLOY),
            ]),
            post_deploy=PhaseBucket(Phase.POST_DEPLOY),
        )

    def test_allowed_batch_keeps_buckets(self):
        verdicts = [self.classifier.classify(TestDataFactory.create_add_nullable_column())]

        report = VerdictReporter(rule_table_version="2024.1").build(verdicts, self.buckets, [], session=3)

        self.assertTrue(report.ok)
        self.assertEqual(report.pre_deploy.sql, ["ALTER TABLE users ADD COLUMN IF NOT EXISTS nickname text"])
        self.assertEqual(report.rule_table_version, "2024.1")
        self.assertEqual(report.session, 3)
        self.assertEqual(report.diagnostics, [])
        report.raise_for_status()

    def test_one_blocked_verdict_empties_both_buckets(self):
        """Test that a single blocked operation rejects the whole batch."""
        verdicts = [
            self.classifier.classify(TestDataFactory.create_add_nullable_column("op-1")),
            self.classifier.classify(TestDataFactory.create_add_not_null_column("op-2")),
        ]

        report = VerdictReporter().build(verdicts, self.buckets, [])

        self.assertFalse(report.ok)
        self.assertEqual(report.pre_deploy.statements, [])
        self.assertEqual(report.post_deploy.statements, [])
        self.assertEqual(len(report.blocked), 1)
        self.assertTrue(report.diagnostics[0].startswith("op-2: blocked"))
        with self.assertRaises(UnsafeOperationError):
            report.raise_for_status()

    def test_strict_mode_blocks_suggestions(self):
        verdicts = [self.classifier.classify(TestDataFactory.create_drop_column())]

        lenient = VerdictReporter(strict=False).build(verdicts, self.buckets, [])
        strict = VerdictReporter(strict=True).build(verdicts, self.buckets, [])

        self.assertTrue(lenient.ok)
        self.assertFalse(strict.ok)

    def test_engine_error_rejects_batch(self):
        error = SchedulingCycleError("depends on a lifecycle plan that was never proposed")

        report = VerdictReporter().build([], None, [], errors=[error])

        self.assertFalse(report.ok)
        self.assertEqual(report.errors, [{"type": "SchedulingCycleError", "message": str(error)}])
        with self.assertRaises(SchedulingCycleError):
            report.raise_for_status()

    def test_report_serializes(self):
        verdicts = [self.classifier.classify(TestDataFactory.create_add_nullable_column())]

        data = VerdictReporter().build(verdicts, self.buckets, []).to_dict()

        self.assertTrue(data["ok"])
        self.assertEqual(data["verdicts"][0]["status"], "allowed")
        self.assertEqual(data["pre_deploy"][0]["execution_mode"], "transactional")
