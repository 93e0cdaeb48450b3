"""Unit tests for MigrationBuilder."""

import unittest

from safe_migrate.domain.entities.operation import Operation, OperationKind
from safe_migrate.domain.services.migration_builder import MigrationBuilder, quote_ident


class TestMigrationBuilder(unittest.TestCase):

    def setUp(self):
        self.builder = MigrationBuilder()

    def test_identifiers_quoted_only_when_needed(self):
        self.assertEqual(quote_ident("users"), "users")
        self.assertEqual(quote_ident("user"), '"user"')
        self.assertEqual(quote_ident("CamelCase"), '"CamelCase"')
        self.assertEqual(quote_ident("billing.invoices"), "billing.invoices")

    def test_add_column_is_idempotent(self):
        sql = self.builder.add_column("users", "nickname", "nickname text")

        self.assertEqual(sql, "ALTER TABLE users ADD COLUMN IF NOT EXISTS nickname text")

    def test_constraint_not_valid_then_validate(self):
        add = self.builder.add_constraint("orders", "fk_orders_customer_id",
                                          "FOREIGN KEY (customer_id) REFERENCES customers (id)", not_valid=True)
        validate = self.builder.validate_constraint("orders", "fk_orders_customer_id")

        self.assertTrue(add.endswith("REFERENCES customers (id) NOT VALID"))
        self.assertEqual(validate, "ALTER TABLE orders VALIDATE CONSTRAINT fk_orders_customer_id")

    def test_sync_function_copies_old_into_new_only(self):
        sql = self.builder.sync_function("fn_sync_users_name_to_full_name", "name", "full_name")

        self.assertIn("NEW.full_name := NEW.name;", sql)
        self.assertNotIn("NEW.name := NEW.full_name", sql)
        self.assertTrue(sql.startswith("CREATE OR REPLACE FUNCTION"))

    def test_backfill_batch_only_touches_missing_rows(self):
        sql = self.builder.backfill_batch("users", "name", "full_name", 5000)

        self.assertIn("WHERE full_name IS NULL AND name IS NOT NULL LIMIT 5000", sql)
        self.assertTrue(sql.startswith("UPDATE users SET full_name = name"))

    def test_verification_query_samples_deterministically(self):
        sql = self.builder.verification_query("users", "name", "full_name", 10)

        self.assertIn("name IS DISTINCT FROM full_name", sql)
        self.assertIn("abs(hashtext(ctid::text)) % 100 < 10", sql)
        self.assertIn("AS source_checksum", sql)
        self.assertIn("AS target_checksum", sql)

    def test_build_uses_statement_verbatim(self):
        op = Operation(kind=OperationKind.EXECUTE_SQL, table="users",
                       statement="  UPDATE users SET plan = 'free' WHERE plan IS NULL ", operation_id="op-1")

        self.assertEqual(self.builder.build(op), ["UPDATE users SET plan = 'free' WHERE plan IS NULL"])

    def test_build_generates_drop_table(self):
        op = Operation(kind=OperationKind.DROP_TABLE, table="legacy_events", operation_id="op-1")

        self.assertEqual(self.builder.build(op), ["DROP TABLE IF EXISTS legacy_events"])

    def test_only_postgresql_is_supported(self):
        with self.assertRaises(ValueError):
            MigrationBuilder("mysql")
