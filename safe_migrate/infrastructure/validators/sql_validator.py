"""SQL validation services."""

import sqlparse
from sqlparse.sql import Where
from typing import Tuple, Optional

from safe_migrate.domain.repositories.interfaces import IStatementValidator


class SQLValidator(IStatementValidator):
    """
    Validates raw SQL statement text.
    Single Responsibility: SQL validation.
    """

    def __init__(self, dialect: str = "postgresql"):
        self._dialect = dialect

    def validate_syntax(self, sql: str) -> Tuple[bool, Optional[str]]:
        """
        Validate SQL syntax.
        Returns (is_valid, error_message).
        """
        parsed = [s for s in sqlparse.parse(sql) if s.value.strip(" \n\t;")]

        if not parsed:
            return False, "Empty SQL statement"

        if len(parsed) > 1:
            return False, f"Operation carries {len(parsed)} statements; submit one statement per operation"

        for statement in parsed:
            # Check for dangerous operations
            tokens = [t.value.upper() for t in statement.flatten() if not t.is_whitespace]

            if 'DROP' in tokens and 'DATABASE' in tokens:
                return False, "DROP DATABASE is not allowed"

            if 'TRUNCATE' in tokens:
                return False, "TRUNCATE requires explicit approval"

            # Whole-table rewrites hold row locks for the full statement
            statement_type = statement.get_type()
            if statement_type in ('UPDATE', 'DELETE') and not any(isinstance(t, Where) for t in statement.tokens):
                return False, f"{statement_type} without WHERE rewrites the whole table; backfill in bounded batches"

        return True, None
