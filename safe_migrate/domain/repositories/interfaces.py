from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Tuple

from safe_migrate.domain.entities.operation import Operation, BackfillSnapshot, Phase
from safe_migrate.domain.entities.lifecycle import ColumnLifecyclePlan
from safe_migrate.domain.entities.rules import RuleTable


class IStatementValidator(ABC):
    """Interface for raw statement text checks."""

    @abstractmethod
    def validate_syntax(self, sql: str) -> Tuple[bool, Optional[str]]:
        """Return (is_valid, error_message)."""
        pass


class IStatementParser(ABC):
    """Interface for mapping one raw SQL statement onto an operation."""

    @abstractmethod
    def parse_statement(self, statement: str, index: int = 1, phase: Optional[Phase] = None) -> Operation:
        """Unrecognised statements come back with a raw (unknown) kind."""
        pass


class IRuleRepository(ABC):
    """Interface for rule table access."""

    @abstractmethod
    def get_rule_table(self) -> RuleTable:
        """Retrieve the active rule table."""
        pass


class IOperationRepository(ABC):
    """Interface for operation descriptor parsing."""

    @abstractmethod
    def parse_operations(self, json_data: Any) -> List[Operation]:
        """Parse operation descriptors."""
        pass


class IPlanRepository(ABC):
    """Interface for lifecycle plan persistence between planning sessions."""

    @abstractmethod
    def list_plans(self) -> List[ColumnLifecyclePlan]:
        pass

    @abstractmethod
    def get_plan(self, plan_id: str) -> Optional[ColumnLifecyclePlan]:
        pass

    @abstractmethod
    def save_plans(self, plans: List[ColumnLifecyclePlan]) -> None:
        pass

    @abstractmethod
    def next_session(self) -> int:
        """Reserve the next planning session number."""
        pass


class IVerificationProbe(ABC):
    """Interface for running a verification query against the live database."""

    @abstractmethod
    def measure(self, verification_sql: str) -> BackfillSnapshot:
        pass


def snapshot_from_row(row: Dict[str, Any]) -> BackfillSnapshot:
    return BackfillSnapshot(
        total_rows=int(row.get("total_rows") or 0),
        mismatched_rows=int(row.get("mismatched_rows") or 0),
        source_checksum=str(row.get("source_checksum") or ""),
        target_checksum=str(row.get("target_checksum") or ""),
    )
