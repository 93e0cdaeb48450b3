from dataclasses import dataclass
from typing import List

from safe_migrate.domain.entities.operation import BackfillSnapshot
from safe_migrate.domain.entities.lifecycle import ColumnLifecyclePlan
from safe_migrate.domain.services.migration_builder import MigrationBuilder


@dataclass(frozen=True)
class VerificationResult:
    matched: bool
    problems: List[str]


class BackfillVerifier:
    """
    Row-count plus sampled-hash comparison between the old and new column.
    Rows are sampled deterministically by hashing their ctid, so the same
    table contents always produce the same checksums.
    """

    def __init__(self, builder: MigrationBuilder, sample_percent: int = 10):
        if not 0 < sample_percent <= 100:
            raise ValueError("sample_percent must be within 1..100")
        self._builder = builder
        self._sample_percent = sample_percent

    def query_for(self, plan: ColumnLifecyclePlan) -> str:
        return self._builder.verification_query(
            plan.table, plan.source_column, plan.target_column, self._sample_percent
        )

    def evaluate(self, snapshot: BackfillSnapshot) -> VerificationResult:
        problems = []
        if snapshot.total_rows < 0 or snapshot.mismatched_rows < 0:
            problems.append("negative row counts reported")
        if snapshot.mismatched_rows:
            problems.append(
                f"{snapshot.mismatched_rows} of {snapshot.total_rows} rows differ between old and new column"
            )
        if snapshot.source_checksum != snapshot.target_checksum:
            problems.append(
                f"sampled checksum mismatch ({snapshot.source_checksum} != {snapshot.target_checksum})"
            )
        return VerificationResult(matched=not problems, problems=problems)
