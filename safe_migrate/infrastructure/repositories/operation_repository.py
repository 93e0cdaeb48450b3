from typing import Any, Dict, List, Optional

from safe_migrate.domain.repositories.interfaces import IOperationRepository
from safe_migrate.domain.entities.operation import Operation, OperationKind, Phase, BackfillSnapshot


class OperationRepository(IOperationRepository):
    """
    Repository for operation descriptors.
    Single Responsibility: descriptor parsing and validation.
    """

    def parse_operations(self, json_data: Any) -> List[Operation]:
        """Parse operations from a list or an {"operations": [...]} document."""
        items = json_data.get("operations", []) if isinstance(json_data, dict) else json_data
        return [self.parse_operation(item, index) for index, item in enumerate(items, 1)]

    def parse_operation(self, data: Dict[str, Any], index: int = 1) -> Operation:
        if "kind" not in data:
            raise ValueError(f"Operation #{index} has no 'kind'")

        columns = data.get("columns")
        if columns is None:
            columns = [data["column"]] if data.get("column") else []
        elif isinstance(columns, str):
            columns = [columns]

        return Operation(
            kind=OperationKind.parse(str(data["kind"])),
            table=data.get("table", ""),
            columns=tuple(columns),
            new_column=data.get("new_column"),
            definition=data.get("definition"),
            phase_hint=self._parse_phase(data.get("phase")),
            statement=data.get("statement"),
            index_name=data.get("index_name"),
            concurrent=data.get("mode") == "concurrent" or bool(data.get("concurrent", False)),
            unique=bool(data.get("unique", False)),
            where=data.get("where"),
            constraint_name=data.get("constraint_name"),
            operation_id=str(data.get("id") or f"op-{index}"),
        )

    def parse_backfill_results(self, json_data: Any) -> Dict[str, BackfillSnapshot]:
        """Parse runner-reported verification results keyed by plan id."""
        items = json_data.get("backfill_results", []) if isinstance(json_data, dict) else []
        return {
            item["plan_id"]: BackfillSnapshot(
                total_rows=int(item["total_rows"]),
                mismatched_rows=int(item["mismatched_rows"]),
                source_checksum=str(item["source_checksum"]),
                target_checksum=str(item["target_checksum"]),
            )
            for item in items
        }

    def validate_operations(self, operations: List[Operation]) -> bool:
        """Validate descriptor structure."""
        ids = [op.operation_id for op in operations]
        return len(ids) == len(set(ids))

    def _parse_phase(self, value: Optional[str]) -> Optional[Phase]:
        if not value:
            return None
        normalized = value.strip().lower().replace("-", "_")
        aliases = {"pre": "pre_deploy", "post": "post_deploy"}
        try:
            return Phase(aliases.get(normalized, normalized))
        except ValueError:
            raise ValueError(f"Unknown phase hint: {value}") from None
