from typing import List, Optional
import logging

from safe_migrate.domain.entities.lifecycle import ColumnLifecyclePlan
from safe_migrate.domain.entities.operation import Phase
from safe_migrate.domain.entities.verdict import MigrationReport, PhaseBucket, Verdict, VerdictStatus
from safe_migrate.domain.errors import MigrationSafetyError
from safe_migrate.domain.services.phase_scheduler import ScheduledBuckets

logger = logging.getLogger(__name__)


class VerdictReporter:
    """
    Aggregates verdicts, buckets and plan state into one report.
    All-or-nothing: any blocking verdict or engine error empties both buckets.
    """

    def __init__(self, strict: bool = False, rule_table_version: str = ""):
        self._strict = strict
        self._version = rule_table_version

    def is_blocking(self, verdict: Verdict) -> bool:
        if verdict.status == VerdictStatus.BLOCKED:
            return True
        return self._strict and verdict.status == VerdictStatus.BLOCKED_WITH_SUGGESTION

    def build(
        self,
        verdicts: List[Verdict],
        buckets: Optional[ScheduledBuckets],
        plans: List[ColumnLifecyclePlan],
        errors: Optional[List[MigrationSafetyError]] = None,
        session: int = 0,
    ) -> MigrationReport:
        errors = errors or []
        blocking = [v for v in verdicts if self.is_blocking(v)]
        ok = not blocking and not errors and buckets is not None

        diagnostics = []
        for verdict in verdicts:
            if verdict.status == VerdictStatus.ALLOWED:
                continue
            line = f"{verdict.operation.operation_id}: {verdict.status.value}: {verdict.rationale}"
            if verdict.suggestion:
                line += f" (suggestion: {verdict.suggestion})"
            diagnostics.append(line)
        for plan in plans:
            if plan.frozen:
                diagnostics.append(f"{plan.plan_id}: frozen in {plan.state.value}: {plan.frozen_reason}")

        report = MigrationReport(
            ok=ok,
            verdicts=list(verdicts),
            pre_deploy=buckets.pre_deploy if ok else PhaseBucket(Phase.PRE_DEPLOY),
            post_deploy=buckets.post_deploy if ok else PhaseBucket(Phase.POST_DEPLOY),
            plans=[p.summary() for p in plans],
            diagnostics=diagnostics,
            errors=[{"type": type(e).__name__, "message": str(e)} for e in errors],
            rule_table_version=self._version,
            session=session,
        )

        if ok:
            logger.info(
                f"[VerdictReporter] Batch accepted: {len(report.pre_deploy.statements)} pre-deploy, "
                f"{len(report.post_deploy.statements)} post-deploy statement(s)"
            )
        else:
            logger.warning(
                f"[VerdictReporter] Batch rejected: {len(blocking)} blocking verdict(s), {len(errors)} error(s)"
            )
        return report
