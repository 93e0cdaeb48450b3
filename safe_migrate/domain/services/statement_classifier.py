from dataclasses import replace
from typing import List, Optional
import logging
import re

from safe_migrate.domain.entities.operation import Operation, OperationKind, Phase
from safe_migrate.domain.entities.rules import RuleTable, ClassificationRule
from safe_migrate.domain.entities.verdict import Verdict, VerdictStatus, PhaseLabel
from safe_migrate.domain.repositories.interfaces import IStatementParser, IStatementValidator

logger = logging.getLogger(__name__)

UNKNOWN_KIND_RATIONALE = "unknown operation kind — requires manual review"


def _normalize(text: Optional[str]) -> str:
    return " ".join((text or "").lower().split())


class StatementClassifier:
    """
    Labels proposed operations as phase-safe or phase-unsafe.
    Single Responsibility: classification against a rule table, no side effects.
    """

    def __init__(
        self,
        rule_table: RuleTable,
        statement_validator: Optional[IStatementValidator] = None,
        statement_parser: Optional[IStatementParser] = None,
    ):
        self._rules = rule_table
        self._validator = statement_validator
        self._parser = statement_parser
        self._forbidden = [re.compile(p) for p in rule_table.forbidden_patterns]

    @property
    def rule_table(self) -> RuleTable:
        return self._rules

    def classify_all(self, operations: List[Operation]) -> List[Verdict]:
        return [self.classify(op) for op in operations]

    def classify(self, operation: Operation) -> Verdict:
        """Classify one operation in the bucket its phase hint names (pre-deploy by default)."""
        if not operation.known:
            logger.warning(f"[StatementClassifier] Unknown operation kind '{operation.kind_name}'")
            return self._blocked(operation, UNKNOWN_KIND_RATIONALE, "ClassificationError")

        missing = self._missing_fields(operation)
        if missing:
            return self._blocked(
                operation,
                f"{operation.kind_name} is missing required field(s): {', '.join(missing)}",
                "UnsafeOperationError",
            )

        violation = self._check_raw_statement(operation)
        if violation:
            return self._blocked(operation, violation, "UnsafeOperationError")

        if self._parser and operation.statement:
            parsed = self._parser.parse_statement(operation.statement, phase=operation.phase_hint)
            if operation.kind == OperationKind.EXECUTE_SQL:
                if not parsed.known:
                    return self._blocked(
                        operation,
                        f"raw statement is not plain DML ({parsed.kind_name}), requires manual review",
                        "ClassificationError",
                    )
                if parsed.kind != OperationKind.EXECUTE_SQL:
                    logger.info(f"[StatementClassifier] {operation.operation_id}: raw statement is {parsed.kind_name}")
                    return self.classify(replace(parsed, operation_id=operation.operation_id))
            else:
                mismatch = self._statement_mismatch(operation, parsed)
                if mismatch:
                    return self._blocked(operation, mismatch, "UnsafeOperationError")

        shape = self._shape(operation)
        rule = self._rules.lookup(operation.kind_name, shape)
        if rule is None:
            key = f"{operation.kind_name}:{shape}" if shape else operation.kind_name
            logger.warning(f"[StatementClassifier] No rule for '{key}' in rule table {self._rules.version}")
            return self._blocked(operation, f"no rule for '{key}', requires manual review", "ClassificationError")

        return self._apply(operation, rule)

    def _apply(self, operation: Operation, rule: ClassificationRule) -> Verdict:
        phase = operation.phase_hint or Phase.PRE_DEPLOY
        status = rule.status_for(phase)
        verdict = Verdict(
            operation=operation,
            status=status,
            label=rule.label,
            rationale=rule.rationale,
            suggestion=rule.suggestion if status != VerdictStatus.ALLOWED else None,
            suggested_phases=rule.suggested_phases if status == VerdictStatus.BLOCKED_WITH_SUGGESTION else (),
            error_code=None if status == VerdictStatus.ALLOWED else "UnsafeOperationError",
            rule_key=rule.key,
        )
        logger.debug(f"[StatementClassifier] {operation.describe()} in {phase.value}: {status.value}")
        return verdict

    def _shape(self, operation: Operation) -> Optional[str]:
        """Variant of the operation used to pick a more specific rule."""
        kind = operation.kind
        if kind == OperationKind.ADD_COLUMN:
            if operation.nullable:
                return "nullable"
            return "not-null-default" if operation.has_default else "not-null"
        if kind in (OperationKind.DROP_COLUMN, OperationKind.DROP_TABLE):
            if operation.phase_hint == Phase.PRE_DEPLOY:
                return "explicit-pre-deploy"
            return None
        if kind == OperationKind.ADD_INDEX:
            return "concurrent" if operation.concurrent else "blocking"
        if kind == OperationKind.ADD_CONSTRAINT:
            body = (operation.definition or "").upper()
            if "NOT VALID" in body:
                return "not-valid"
            if "UNIQUE" in body or "PRIMARY KEY" in body:
                return "unique"
            return "validating"
        return None

    def _missing_fields(self, operation: Operation) -> List[str]:
        kind = operation.kind
        missing = []
        if not operation.table and kind != OperationKind.EXECUTE_SQL:
            missing.append("table")
        if kind in (OperationKind.ADD_COLUMN, OperationKind.DROP_COLUMN, OperationKind.RENAME_COLUMN,
                    OperationKind.CHANGE_COLUMN_TYPE, OperationKind.ADD_INDEX):
            if not operation.columns:
                missing.append("column")
        if kind == OperationKind.RENAME_COLUMN:
            if not operation.new_column:
                missing.append("new_column")
        if kind == OperationKind.ADD_COLUMN and not operation.definition:
            missing.append("definition")
        if kind == OperationKind.ADD_CONSTRAINT and not operation.definition:
            missing.append("definition")
        if kind == OperationKind.DROP_INDEX and not operation.index_name:
            missing.append("index_name")
        if kind == OperationKind.EXECUTE_SQL and not (operation.statement or "").strip():
            missing.append("statement")
        return missing

    def _check_raw_statement(self, operation: Operation) -> Optional[str]:
        """Rules with a checkable shape over the raw statement text."""
        text = operation.statement
        if not text:
            return None

        for pattern in self._forbidden:
            match = pattern.search(text)
            if match:
                return f"statement references application/ORM symbol '{match.group(0)}'; migrations must use plain SQL"

        if self._validator:
            is_valid, error = self._validator.validate_syntax(text)
            if not is_valid:
                return error
        return None

    def _statement_mismatch(self, operation: Operation, parsed: Operation) -> Optional[str]:
        """The statement text is what ships, so it must say what the descriptor says."""
        differences = []
        if parsed.kind != operation.kind:
            differences.append(f"statement is {parsed.kind_name}")
        else:
            if _normalize(parsed.table) != _normalize(operation.table):
                differences.append(f"table {parsed.table}")
            if parsed.columns and operation.columns and \
                    [_normalize(c) for c in parsed.columns] != [_normalize(c) for c in operation.columns]:
                differences.append(f"column(s) {', '.join(parsed.columns)}")
            if parsed.definition and operation.definition and \
                    _normalize(parsed.definition) != _normalize(operation.definition):
                differences.append(f"definition '{parsed.definition}'")
            if parsed.constraint_name and operation.constraint_name and \
                    _normalize(parsed.constraint_name) != _normalize(operation.constraint_name):
                differences.append(f"constraint {parsed.constraint_name}")
        if not differences:
            return None
        return f"statement does not match the {operation.kind_name} descriptor: {'; '.join(differences)}"

    def _blocked(self, operation: Operation, rationale: str, error_code: str) -> Verdict:
        return Verdict(
            operation=operation,
            status=VerdictStatus.BLOCKED,
            label=PhaseLabel.UNSAFE_PRE_DEPLOY,
            rationale=rationale,
            error_code=error_code,
        )
