"""Derives operation descriptors from raw migration SQL."""

from typing import List, Optional, Dict, Any
import logging
import re

import sqlparse

from safe_migrate.domain.entities.operation import Operation, OperationKind, Phase
from safe_migrate.domain.repositories.interfaces import IStatementParser

logger = logging.getLogger(__name__)

_IDENT = r'"[^"]+"|[A-Za-z_][A-Za-z0-9_$.]*'

_PATTERNS = [
    (OperationKind.CREATE_TABLE, re.compile(
        rf"^CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?(?P<table>{_IDENT})\s*\((?P<definition>.*)\)\s*$", re.I | re.S)),
    (OperationKind.DROP_TABLE, re.compile(
        rf"^DROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?P<table>{_IDENT})\s*(?:CASCADE|RESTRICT)?\s*$", re.I)),
    (OperationKind.ADD_CONSTRAINT, re.compile(
        rf"^ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?(?P<table>{_IDENT})\s+ADD\s+CONSTRAINT\s+"
        rf"(?P<constraint>{_IDENT})\s+(?P<definition>.+)$", re.I | re.S)),
    (OperationKind.ADD_COLUMN, re.compile(
        rf"^ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?(?P<table>{_IDENT})\s+ADD\s+(?:COLUMN\s+)?"
        rf"(?:IF\s+NOT\s+EXISTS\s+)?(?!(?:CONSTRAINT|PRIMARY|UNIQUE|FOREIGN|CHECK|EXCLUDE)\b)"
        rf"(?P<column>{_IDENT})\s+(?P<definition>.+)$", re.I | re.S)),
    (OperationKind.DROP_COLUMN, re.compile(
        rf"^ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?(?P<table>{_IDENT})\s+DROP\s+(?:COLUMN\s+)?"
        rf"(?:IF\s+EXISTS\s+)?(?P<column>{_IDENT})\s*(?:CASCADE|RESTRICT)?\s*$", re.I)),
    (OperationKind.RENAME_COLUMN, re.compile(
        rf"^ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?(?P<table>{_IDENT})\s+RENAME\s+(?:COLUMN\s+)?"
        rf"(?P<column>{_IDENT})\s+TO\s+(?P<new_column>{_IDENT})\s*$", re.I)),
    (OperationKind.CHANGE_COLUMN_TYPE, re.compile(
        rf"^ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?(?P<table>{_IDENT})\s+ALTER\s+(?:COLUMN\s+)?"
        rf"(?P<column>{_IDENT})\s+(?:SET\s+DATA\s+)?TYPE\s+(?P<definition>.+)$", re.I | re.S)),
    (OperationKind.ADD_INDEX, re.compile(
        rf"^CREATE\s+(?P<unique>UNIQUE\s+)?INDEX\s+(?P<concurrent>CONCURRENTLY\s+)?(?:IF\s+NOT\s+EXISTS\s+)?"
        rf"(?P<index>{_IDENT})?\s*ON\s+(?:ONLY\s+)?(?P<table>{_IDENT})\s*(?:USING\s+\w+\s*)?"
        rf"\((?P<columns>[^)]*)\)\s*(?:WHERE\s+(?P<where>.+))?$", re.I | re.S)),
    (OperationKind.DROP_INDEX, re.compile(
        rf"^DROP\s+INDEX\s+(?:CONCURRENTLY\s+)?(?:IF\s+EXISTS\s+)?(?P<index>{_IDENT})\s*$", re.I)),
]

_DML_TYPES = {"INSERT", "UPDATE", "DELETE", "SELECT"}


def _clean(statement: str) -> str:
    return sqlparse.format(statement, strip_comments=True).strip().rstrip(";").strip()


def _unquote(name: Optional[str]) -> Optional[str]:
    if name and name.startswith('"') and name.endswith('"'):
        return name[1:-1]
    return name


class SQLOperationParser(IStatementParser):
    """
    Splits a migration script into statements and maps each one onto an
    operation. Statements that match no known shape keep a raw kind so the
    classifier blocks them for manual review.
    """

    def parse(self, sql_text: str, phase: Optional[Phase] = None) -> List[Operation]:
        operations = []
        for index, raw in enumerate(sqlparse.split(sql_text), 1):
            if not _clean(raw):
                continue
            operations.append(self.parse_statement(raw, index, phase))
        logger.info(f"[SQLOperationParser] Parsed {len(operations)} statement(s)")
        return operations

    def parse_statement(self, statement: str, index: int = 1, phase: Optional[Phase] = None) -> Operation:
        statement = _clean(statement)
        for kind, pattern in _PATTERNS:
            match = pattern.match(statement)
            if match:
                return self._build(kind, match.groupdict(), statement, index, phase)

        parsed = sqlparse.parse(statement)
        statement_type = parsed[0].get_type() if parsed else "UNKNOWN"
        if statement_type in _DML_TYPES:
            table = self._dml_table(statement)
            return Operation(kind=OperationKind.EXECUTE_SQL, table=table or "", statement=statement,
                             phase_hint=phase, operation_id=f"sql-{index}")

        words = statement.split()
        raw_kind = "-".join(w.lower() for w in words[:2]) if words else "empty"
        logger.warning(f"[SQLOperationParser] Unrecognised statement #{index}: {statement[:60]}")
        return Operation(kind=raw_kind, table="", statement=statement, phase_hint=phase, operation_id=f"sql-{index}")

    def _build(self, kind: OperationKind, groups: Dict[str, Any], statement: str, index: int,
               phase: Optional[Phase]) -> Operation:
        columns = ()
        if groups.get("columns"):
            columns = tuple(_unquote(c.strip()) for c in groups["columns"].split(",") if c.strip())
        elif groups.get("column"):
            columns = (_unquote(groups["column"]),)

        keep_statement = kind in (OperationKind.CREATE_TABLE, OperationKind.ADD_COLUMN, OperationKind.ADD_CONSTRAINT)
        return Operation(
            kind=kind,
            table=_unquote(groups.get("table")) or "",
            columns=columns,
            new_column=_unquote(groups.get("new_column")),
            definition=(groups.get("definition") or "").strip() or None,
            phase_hint=phase,
            statement=statement if keep_statement else None,
            index_name=_unquote(groups.get("index")),
            concurrent=bool(groups.get("concurrent")),
            unique=bool(groups.get("unique")),
            where=(groups.get("where") or "").strip() or None,
            constraint_name=_unquote(groups.get("constraint")),
            operation_id=f"sql-{index}",
        )

    def _dml_table(self, statement: str) -> Optional[str]:
        match = re.search(rf"\b(?:INTO|UPDATE|FROM)\s+(?P<table>{_IDENT})", statement, re.I)
        return _unquote(match.group("table")) if match else None
