"""Unit tests for SQLOperationParser and SQLValidator."""

import unittest

from safe_migrate.domain.entities.operation import OperationKind, Phase
from safe_migrate.infrastructure.parsers.sql_operation_parser import SQLOperationParser
from safe_migrate.infrastructure.validators.sql_validator import SQLValidator


class TestSQLOperationParser(unittest.TestCase):

    def setUp(self):
        self.parser = SQLOperationParser()

    def test_script_is_split_into_operations(self):
        # Arrange
        script = """
        -- add the nickname column
        ALTER TABLE users ADD COLUMN nickname text;
        CREATE INDEX CONCURRENTLY idx_orders_customer_id ON orders (customer_id);
        ALTER TABLE users RENAME COLUMN name TO full_name;
        """

        # Act
        operations = self.parser.parse(script)

        # Assert
        self.assertEqual([op.kind for op in operations], [
            OperationKind.ADD_COLUMN, OperationKind.ADD_INDEX, OperationKind.RENAME_COLUMN,
        ])
        self.assertEqual([op.operation_id for op in operations], ["sql-1", "sql-2", "sql-3"])

        add, index, rename = operations
        self.assertEqual(add.table, "users")
        self.assertEqual(add.columns, ("nickname",))
        self.assertEqual(add.definition, "text")
        self.assertTrue(index.concurrent)
        self.assertEqual(index.index_name, "idx_orders_customer_id")
        self.assertEqual(index.columns, ("customer_id",))
        self.assertEqual(rename.columns, ("name",))
        self.assertEqual(rename.new_column, "full_name")

    def test_phase_hint_applies_to_every_statement(self):
        operations = self.parser.parse("ALTER TABLE users DROP COLUMN legacy_flag;", Phase.POST_DEPLOY)

        self.assertEqual(operations[0].kind, OperationKind.DROP_COLUMN)
        self.assertEqual(operations[0].phase_hint, Phase.POST_DEPLOY)

    def test_unique_partial_index(self):
        op = self.parser.parse_statement(
            'CREATE UNIQUE INDEX uidx_users_email ON users (email) WHERE deleted_at IS NULL'
        )

        self.assertTrue(op.unique)
        self.assertFalse(op.concurrent)
        self.assertEqual(op.where, "deleted_at IS NULL")

    def test_named_constraint(self):
        op = self.parser.parse_statement(
            "ALTER TABLE orders ADD CONSTRAINT fk_orders_customer FOREIGN KEY (customer_id) REFERENCES customers (id)"
        )

        self.assertEqual(op.kind, OperationKind.ADD_CONSTRAINT)
        self.assertEqual(op.constraint_name, "fk_orders_customer")
        self.assertEqual(op.definition, "FOREIGN KEY (customer_id) REFERENCES customers (id)")

    def test_unrecognised_alter_keeps_raw_kind(self):
        op = self.parser.parse_statement("ALTER TABLE users ADD PRIMARY KEY (id)")

        self.assertFalse(op.known)
        self.assertEqual(op.kind, "alter-table")

    def test_dml_becomes_raw_sql(self):
        op = self.parser.parse_statement("UPDATE users SET plan = 'free' WHERE plan IS NULL")

        self.assertEqual(op.kind, OperationKind.EXECUTE_SQL)
        self.assertEqual(op.table, "users")
        self.assertEqual(op.statement, "UPDATE users SET plan = 'free' WHERE plan IS NULL")

    def test_single_statement_is_cleaned_before_matching(self):
        op = self.parser.parse_statement("-- retire the flag\nALTER TABLE users DROP COLUMN legacy_flag;")

        self.assertEqual(op.kind, OperationKind.DROP_COLUMN)
        self.assertEqual(op.columns, ("legacy_flag",))


class TestSQLValidator(unittest.TestCase):

    def setUp(self):
        self.validator = SQLValidator()

    def test_single_statement_is_valid(self):
        self.assertEqual(self.validator.validate_syntax("UPDATE users SET plan = 'free' WHERE plan IS NULL"), (True, None))

    def test_rejections(self):
        self.assertEqual(self.validator.validate_syntax("   "), (False, "Empty SQL statement"))
        self.assertEqual(self.validator.validate_syntax("DROP DATABASE app"), (False, "DROP DATABASE is not allowed"))
        is_valid, error = self.validator.validate_syntax("SELECT 1; SELECT 2")
        self.assertFalse(is_valid)
        self.assertIn("2 statements", error)

    def test_unbounded_dml_is_rejected(self):
        update_ok, update_error = self.validator.validate_syntax("UPDATE users SET x = 1")
        delete_ok, delete_error = self.validator.validate_syntax("DELETE FROM audit_log")

        self.assertFalse(update_ok)
        self.assertIn("UPDATE without WHERE", update_error)
        self.assertFalse(delete_ok)
        self.assertIn("DELETE without WHERE", delete_error)
        self.assertEqual(self.validator.validate_syntax("DELETE FROM audit_log WHERE created_at < now() - interval '90 days'"),
                         (True, None))
