from typing import Optional, List, Any, Dict
import json
import logging

from safe_migrate.domain.repositories.interfaces import IRuleRepository
from safe_migrate.domain.entities.operation import Phase
from safe_migrate.domain.entities.rules import RuleTable, ClassificationRule, NamingConvention
from safe_migrate.domain.entities.verdict import VerdictStatus, PhaseLabel

logger = logging.getLogger(__name__)

DEFAULT_RULE_TABLE_VERSION = "2024.1"

ALLOWED = VerdictStatus.ALLOWED
BLOCKED = VerdictStatus.BLOCKED
SUGGEST = VerdictStatus.BLOCKED_WITH_SUGGESTION

DEFAULT_FORBIDDEN_PATTERNS = [
    r"\b[A-Z][A-Za-z0-9_]*\.(?:where|find|find_by|find_each|create!?|update_all|delete_all|pluck)\s*\(",
    r"\b[A-Z][A-Za-z0-9_]*\.objects\b",
    r"\bsession\.query\s*\(",
]


class RuleRepository(IRuleRepository):
    """
    Repository for classification rule tables.
    Single Responsibility: Rule table data access.
    """

    def __init__(self, rules_file: Optional[str] = None):
        self._rules_file = rules_file
        self._default_rules = self._create_default_rules()

    def get_rule_table(self) -> RuleTable:
        """Retrieve the active rule table; a file overrides and extends the defaults."""
        if self._rules_file:
            with open(self._rules_file, 'r') as f:
                data = json.load(f)
            table = self._parse_rules(data)
            logger.info(f"[RuleRepository] Loaded rule table {table.version} from {self._rules_file}")
            return table

        return self._default_rules

    def _create_default_rules(self) -> RuleTable:
        """Create default rule table."""
        pre, post = Phase.PRE_DEPLOY, Phase.POST_DEPLOY
        rules = [
            ClassificationRule(
                key="create-table", pre_deploy=ALLOWED, post_deploy=ALLOWED,
                label=PhaseLabel.SAFE_PRE_DEPLOY,
                rationale="new tables are invisible to code that does not use them",
            ),
            ClassificationRule(
                key="add-column:nullable", pre_deploy=ALLOWED, post_deploy=ALLOWED,
                label=PhaseLabel.SAFE_PRE_DEPLOY,
                rationale="backward/forward compatible",
            ),
            ClassificationRule(
                key="add-column:not-null-default", pre_deploy=ALLOWED, post_deploy=ALLOWED,
                label=PhaseLabel.SAFE_PRE_DEPLOY,
                rationale="existing and old-code rows receive the default",
            ),
            ClassificationRule(
                key="add-column:not-null", pre_deploy=BLOCKED, post_deploy=BLOCKED,
                label=PhaseLabel.UNSAFE_PRE_DEPLOY,
                rationale="old code writes rows without the column",
                suggestion="add the column nullable or with a default, backfill, then add the constraint",
            ),
            ClassificationRule(
                key="drop-column", pre_deploy=SUGGEST, post_deploy=ALLOWED,
                label=PhaseLabel.POST_DEPLOY_ONLY,
                rationale="old code may still read it",
                suggestion="mark the column read-only before deploy and drop it post-deploy",
                suggested_phases=(pre, post),
            ),
            ClassificationRule(
                key="drop-column:explicit-pre-deploy", pre_deploy=BLOCKED, post_deploy=BLOCKED,
                label=PhaseLabel.UNSAFE_PRE_DEPLOY,
                rationale="old code may still read it",
                suggestion="drop the column in a post-deploy migration after marking it read-only",
                suggested_phases=(pre, post),
            ),
            ClassificationRule(
                key="rename-column", pre_deploy=SUGGEST, post_deploy=SUGGEST,
                label=PhaseLabel.UNSAFE_PRE_DEPLOY,
                rationale="must use shadow-column protocol",
                suggestion="add the new column, sync it by trigger, backfill, verify, and drop the old column post-deploy",
                suggested_phases=(pre, post),
            ),
            ClassificationRule(
                key="change-column-type", pre_deploy=BLOCKED, post_deploy=BLOCKED,
                label=PhaseLabel.UNSAFE_PRE_DEPLOY,
                rationale="type changes rewrite the table and break code expecting the old type",
                suggestion="add a new column of the new type and migrate with the rename protocol",
            ),
            ClassificationRule(
                key="add-index:blocking", pre_deploy=SUGGEST, post_deploy=SUGGEST,
                label=PhaseLabel.UNSAFE_PRE_DEPLOY,
                rationale="risks long lock; suggest concurrent variant",
                suggestion="build the index with CREATE INDEX CONCURRENTLY outside a transaction",
                suggested_phases=(pre,),
            ),
            ClassificationRule(
                key="add-index:concurrent", pre_deploy=ALLOWED, post_deploy=ALLOWED,
                label=PhaseLabel.SAFE_PRE_DEPLOY,
                rationale="safe if idempotent",
            ),
            ClassificationRule(
                key="drop-index", pre_deploy=ALLOWED, post_deploy=ALLOWED,
                label=PhaseLabel.SAFE_PRE_DEPLOY,
                rationale="reversible, non-blocking",
            ),
            ClassificationRule(
                key="add-constraint:not-valid", pre_deploy=ALLOWED, post_deploy=ALLOWED,
                label=PhaseLabel.SAFE_PRE_DEPLOY,
                rationale="NOT VALID constraints only check new writes",
            ),
            ClassificationRule(
                key="add-constraint:validating", pre_deploy=SUGGEST, post_deploy=SUGGEST,
                label=PhaseLabel.UNSAFE_PRE_DEPLOY,
                rationale="validating existing rows holds a lock for a full table scan",
                suggestion="add the constraint NOT VALID before deploy and VALIDATE it post-deploy",
                suggested_phases=(pre, post),
            ),
            ClassificationRule(
                key="add-constraint:unique", pre_deploy=BLOCKED, post_deploy=BLOCKED,
                label=PhaseLabel.UNSAFE_PRE_DEPLOY,
                rationale="unique constraints build their index under an exclusive lock",
                suggestion="create a unique index concurrently, then ADD CONSTRAINT ... USING INDEX",
            ),
            ClassificationRule(
                key="drop-table", pre_deploy=BLOCKED, post_deploy=ALLOWED,
                label=PhaseLabel.POST_DEPLOY_ONLY,
                rationale="old code may still read the table",
                suggestion="drop the table in a post-deploy migration",
                suggested_phases=(post,),
            ),
            ClassificationRule(
                key="drop-table:explicit-pre-deploy", pre_deploy=BLOCKED, post_deploy=BLOCKED,
                label=PhaseLabel.UNSAFE_PRE_DEPLOY,
                rationale="old code may still read the table",
                suggestion="drop the table in a post-deploy migration",
                suggested_phases=(post,),
            ),
            ClassificationRule(
                key="execute-sql", pre_deploy=ALLOWED, post_deploy=ALLOWED,
                label=PhaseLabel.SAFE_PRE_DEPLOY,
                rationale="raw SQL passed the statement checks",
            ),
        ]

        return RuleTable(
            version=DEFAULT_RULE_TABLE_VERSION,
            rules={r.key: r for r in rules},
            forbidden_patterns=list(DEFAULT_FORBIDDEN_PATTERNS),
            naming=NamingConvention(),
        )

    def _parse_rules(self, data: Dict[str, Any]) -> RuleTable:
        """Parse a rule table from JSON data, layered over the defaults."""
        rules = dict(self._default_rules.rules)
        for entry in data.get("rules", []):
            rule = self._parse_rule(entry)
            rules[rule.key] = rule

        patterns: List[str] = list(self._default_rules.forbidden_patterns)
        if data.get("replace_forbidden_patterns"):
            patterns = []
        patterns.extend(data.get("forbidden_patterns", []))

        naming_data = data.get("naming", {})
        naming = NamingConvention(**naming_data) if naming_data else NamingConvention()

        return RuleTable(
            version=str(data.get("version", DEFAULT_RULE_TABLE_VERSION)),
            rules=rules,
            forbidden_patterns=patterns,
            naming=naming,
            strict=bool(data.get("strict", False)),
            backfill_batch_size=int(data.get("backfill_batch_size", 10000)),
            verification_sample_percent=int(data.get("verification_sample_percent", 10)),
            metadata=data.get("metadata", {}),
        )

    def _parse_rule(self, entry: Dict[str, Any]) -> ClassificationRule:
        try:
            return ClassificationRule(
                key=entry["key"],
                pre_deploy=VerdictStatus(entry["pre_deploy"]),
                post_deploy=VerdictStatus(entry.get("post_deploy", entry["pre_deploy"])),
                label=PhaseLabel(entry.get("label", PhaseLabel.UNSAFE_PRE_DEPLOY.value)),
                rationale=entry.get("rationale", ""),
                suggestion=entry.get("suggestion"),
                suggested_phases=tuple(Phase(p) for p in entry.get("suggested_phases", [])),
            )
        except (KeyError, ValueError) as e:
            raise ValueError(f"Invalid rule entry {entry!r}: {e}") from e
