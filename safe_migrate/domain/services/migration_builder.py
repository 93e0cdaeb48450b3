from typing import List, Optional
import logging
import re

from safe_migrate.domain.entities.operation import Operation, OperationKind

logger = logging.getLogger(__name__)

_PLAIN_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_$]*$")
_RESERVED = {
    "all", "analyse", "analyze", "and", "any", "array", "as", "asc", "both", "case", "cast",
    "check", "collate", "column", "constraint", "create", "default", "desc", "distinct", "do",
    "else", "end", "except", "false", "for", "foreign", "from", "grant", "group", "having",
    "in", "into", "is", "join", "leading", "limit", "not", "null", "offset", "on", "only",
    "or", "order", "primary", "references", "select", "table", "then", "to", "true", "union",
    "unique", "user", "using", "when", "where", "with",
}


def quote_ident(name: str) -> str:
    """Quote an identifier only when PostgreSQL requires it."""
    if "." in name:
        return ".".join(quote_ident(part) for part in name.split("."))
    if _PLAIN_IDENTIFIER.match(name) and name not in _RESERVED:
        return name
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class MigrationBuilder:
    """
    Generates PostgreSQL DDL for operations and lifecycle steps.
    Single Responsibility: SQL generation only.
    """

    def __init__(self, dialect: str = "postgresql"):
        if dialect != "postgresql":
            raise ValueError(f"Unsupported dialect: {dialect}")
        self._dialect = dialect

    def build(self, operation: Operation) -> List[str]:
        """Generate SQL for an operation that runs as submitted."""
        if operation.statement:
            return [operation.statement.strip()]

        generators = {
            OperationKind.CREATE_TABLE: self._gen_create_table,
            OperationKind.DROP_TABLE: self._gen_drop_table,
            OperationKind.ADD_COLUMN: self._gen_add_column,
            OperationKind.DROP_COLUMN: lambda op: self.drop_column(op.table, op.column),
            OperationKind.ADD_CONSTRAINT: self._gen_add_constraint,
        }

        generator = generators.get(operation.kind)
        if generator is None:
            logger.warning(f"[MigrationBuilder] No generator for {operation.kind_name}")
            return []

        sql = generator(operation)
        logger.debug(f"[MigrationBuilder] Generated SQL: {sql}")
        return [sql]

    def _gen_create_table(self, operation: Operation) -> str:
        return f"CREATE TABLE IF NOT EXISTS {quote_ident(operation.table)} ({operation.definition or ''})"

    def _gen_drop_table(self, operation: Operation) -> str:
        return f"DROP TABLE IF EXISTS {quote_ident(operation.table)}"

    def _gen_add_column(self, operation: Operation) -> str:
        return self.add_column(operation.table, operation.column, operation.definition or "")

    def _gen_add_constraint(self, operation: Operation) -> str:
        name = operation.constraint_name or f"{operation.table}_{'_'.join(operation.columns) or 'check'}"
        return self.add_constraint(operation.table, name, operation.definition or "")

    def add_column(self, table: str, column: str, definition: str) -> str:
        defn = definition.strip()
        if defn.lower().startswith(column.lower() + " "):
            # Definition already includes column name
            defn = defn[len(column):].strip()
        return f"ALTER TABLE {quote_ident(table)} ADD COLUMN IF NOT EXISTS {quote_ident(column)} {defn}"

    def drop_column(self, table: str, column: str) -> str:
        return f"ALTER TABLE {quote_ident(table)} DROP COLUMN IF EXISTS {quote_ident(column)}"

    def add_constraint(self, table: str, name: str, definition: str, not_valid: bool = False) -> str:
        body = definition.strip()
        if not_valid and "NOT VALID" not in body.upper():
            body += " NOT VALID"
        return f"ALTER TABLE {quote_ident(table)} ADD CONSTRAINT {quote_ident(name)} {body}"

    def validate_constraint(self, table: str, name: str) -> str:
        return f"ALTER TABLE {quote_ident(table)} VALIDATE CONSTRAINT {quote_ident(name)}"

    def mark_readonly(self, table: str, column: str, plan_id: str) -> str:
        """Advisory marker read by the application layer; the database does not enforce it."""
        marker = quote_literal(f"readonly: scheduled for removal by lifecycle plan {plan_id}")
        return f"COMMENT ON COLUMN {quote_ident(table)}.{quote_ident(column)} IS {marker}"

    def sync_function(self, function_name: str, source: str, target: str) -> str:
        # old -> new only
        return (
            f"CREATE OR REPLACE FUNCTION {quote_ident(function_name)}() RETURNS trigger AS $$\n"
            f"BEGIN\n"
            f"  NEW.{quote_ident(target)} := NEW.{quote_ident(source)};\n"
            f"  RETURN NEW;\n"
            f"END;\n"
            f"$$ LANGUAGE plpgsql"
        )

    def create_trigger(self, trigger_name: str, table: str, source: str, function_name: str) -> str:
        return (
            f"CREATE TRIGGER {quote_ident(trigger_name)} "
            f"BEFORE INSERT OR UPDATE OF {quote_ident(source)} ON {quote_ident(table)} "
            f"FOR EACH ROW EXECUTE FUNCTION {quote_ident(function_name)}()"
        )

    def drop_trigger(self, trigger_name: str, table: str) -> str:
        return f"DROP TRIGGER IF EXISTS {quote_ident(trigger_name)} ON {quote_ident(table)}"

    def drop_function(self, function_name: str) -> str:
        return f"DROP FUNCTION IF EXISTS {quote_ident(function_name)}()"

    def backfill_batch(self, table: str, source: str, target: str, batch_size: int) -> str:
        """One bounded batch; re-running only touches rows still missing the new value."""
        t, s, d = quote_ident(table), quote_ident(source), quote_ident(target)
        return (
            f"UPDATE {t} SET {d} = {s} WHERE ctid IN ("
            f"SELECT ctid FROM {t} WHERE {d} IS NULL AND {s} IS NOT NULL LIMIT {int(batch_size)})"
        )

    def verification_query(self, table: str, source: str, target: str, sample_percent: int) -> str:
        t, s, d = quote_ident(table), quote_ident(source), quote_ident(target)
        sample = f"abs(hashtext(ctid::text)) % 100 < {int(sample_percent)}"
        return (
            f"SELECT count(*) AS total_rows, "
            f"count(*) FILTER (WHERE {s} IS DISTINCT FROM {d}) AS mismatched_rows, "
            f"md5(coalesce(string_agg({s}::text, ',' ORDER BY ctid) FILTER (WHERE {sample}), '')) AS source_checksum, "
            f"md5(coalesce(string_agg({d}::text, ',' ORDER BY ctid) FILTER (WHERE {sample}), '')) AS target_checksum "
            f"FROM {t}"
        )

    def index_drop(self, index_name: str) -> str:
        return f"DROP INDEX CONCURRENTLY IF EXISTS {quote_ident(index_name)}"

    def index_create(self, index_name: str, table: str, expression: str, unique: bool = False,
                     where: Optional[str] = None) -> str:
        unique_sql = "UNIQUE " if unique else ""
        sql = f"CREATE {unique_sql}INDEX CONCURRENTLY {quote_ident(index_name)} ON {quote_ident(table)} ({expression})"
        if where:
            sql += f" WHERE {where}"
        return sql
