from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Tuple
import hashlib

from safe_migrate.domain.entities.operation import Phase
from safe_migrate.domain.entities.verdict import VerdictStatus, PhaseLabel

MAX_IDENTIFIER_LENGTH = 63


@dataclass(frozen=True)
class NamingConvention:
    """Naming rules for generated database objects."""
    index_prefix: str = "idx_"
    unique_index_prefix: str = "uidx_"
    trigger_prefix: str = "trg_sync_"
    function_prefix: str = "fn_sync_"
    constraint_prefix: str = "fk_"

    def index_name(self, table: str, columns: Tuple[str, ...], unique: bool = False) -> str:
        prefix = self.unique_index_prefix if unique else self.index_prefix
        return self.fit(f"{prefix}{table}_{'_'.join(columns)}")

    def trigger_name(self, table: str, source: str, target: str) -> str:
        return self.fit(f"{self.trigger_prefix}{table}_{source}_to_{target}")

    def function_name(self, table: str, source: str, target: str) -> str:
        return self.fit(f"{self.function_prefix}{table}_{source}_to_{target}")

    def constraint_name(self, table: str, columns: Tuple[str, ...]) -> str:
        return self.fit(f"{self.constraint_prefix}{table}_{'_'.join(columns)}")

    def fit(self, name: str) -> str:
        """Truncate to PostgreSQL's identifier limit with a stable hash suffix."""
        name = name.lower()
        if len(name.encode("utf-8")) <= MAX_IDENTIFIER_LENGTH:
            return name
        digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
        return f"{name[:MAX_IDENTIFIER_LENGTH - 9]}_{digest}"


@dataclass(frozen=True)
class ClassificationRule:
    """Verdicts for one operation kind (optionally one shape of it) per bucket."""
    key: str
    pre_deploy: VerdictStatus
    post_deploy: VerdictStatus
    label: PhaseLabel
    rationale: str
    suggestion: Optional[str] = None
    suggested_phases: Tuple[Phase, ...] = ()

    def status_for(self, phase: Phase) -> VerdictStatus:
        return self.pre_deploy if phase == Phase.PRE_DEPLOY else self.post_deploy


@dataclass
class RuleTable:
    """
    Versioned classification configuration.
    Passed explicitly so classification stays a pure function of (operation, table).
    """
    version: str
    rules: Dict[str, ClassificationRule]
    forbidden_patterns: List[str] = field(default_factory=list)
    naming: NamingConvention = field(default_factory=NamingConvention)
    strict: bool = False
    backfill_batch_size: int = 10000
    verification_sample_percent: int = 10
    metadata: Dict[str, Any] = field(default_factory=dict)

    def lookup(self, kind: str, shape: Optional[str] = None) -> Optional[ClassificationRule]:
        if shape:
            rule = self.rules.get(f"{kind}:{shape}")
            if rule:
                return rule
        return self.rules.get(kind)
