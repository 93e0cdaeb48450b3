"""Data Transfer Objects for application layer."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from safe_migrate.domain.entities.operation import Operation, BackfillSnapshot


@dataclass
class MigrationRequest:
    """Request to classify and plan one batch of operations."""
    operations: List[Operation]
    backfill_results: Dict[str, BackfillSnapshot] = field(default_factory=dict)
    strict: Optional[bool] = None
    operator: str = ""


@dataclass
class PlanActionRequest:
    """Human-initiated action on an existing lifecycle plan."""
    plan_id: str
    operator: str
    reason: str
