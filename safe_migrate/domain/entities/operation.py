from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union
from enum import Enum

import sqlparse
from sqlparse import tokens as T

_CLAUSE_KEYWORDS = {"NOT NULL", "NOT", "NULL", "DEFAULT", "CONSTRAINT", "REFERENCES", "CHECK",
                    "PRIMARY", "UNIQUE", "COLLATE", "GENERATED"}


def definition_keywords(definition: Optional[str]) -> List[Tuple[int, str]]:
    """
    Top-level SQL keywords of a column definition with their character offsets.
    Identifiers, literals and anything inside parentheses are skipped.
    """
    if not definition or not definition.strip():
        return []
    parsed = sqlparse.parse(definition)
    if not parsed:
        return []

    found = []
    offset = 0
    depth = 0
    for token in parsed[0].flatten():
        if token.ttype in T.Punctuation and token.value == "(":
            depth += 1
        elif token.ttype in T.Punctuation and token.value == ")":
            depth = max(depth - 1, 0)
        elif depth == 0 and token.ttype in T.Keyword:
            found.append((offset, " ".join(token.value.upper().split())))
        offset += len(token.value)
    return found


class OperationKind(Enum):
    """Kinds of schema operations the engine knows how to classify."""
    CREATE_TABLE = "create-table"
    DROP_TABLE = "drop-table"
    ADD_COLUMN = "add-column"
    DROP_COLUMN = "drop-column"
    RENAME_COLUMN = "rename-column"
    CHANGE_COLUMN_TYPE = "change-column-type"
    ADD_INDEX = "add-index"
    DROP_INDEX = "drop-index"
    ADD_CONSTRAINT = "add-constraint"
    EXECUTE_SQL = "execute-sql"

    @classmethod
    def parse(cls, value: str) -> Union["OperationKind", str]:
        """Map a descriptor kind onto the enum; unknown kinds stay as raw strings."""
        normalized = value.strip().lower().replace("_", "-")
        try:
            return cls(normalized)
        except ValueError:
            return value


class Phase(Enum):
    """The two migration buckets around a blue/green deploy boundary."""
    PRE_DEPLOY = "pre_deploy"
    POST_DEPLOY = "post_deploy"

    @property
    def order(self) -> int:
        return 0 if self is Phase.PRE_DEPLOY else 1


class ExecutionMode(Enum):
    TRANSACTIONAL = "transactional"
    NON_TRANSACTIONAL = "non-transactional"


@dataclass(frozen=True)
class Operation:
    """A single proposed schema change, immutable once submitted."""
    kind: Union[OperationKind, str]
    table: str
    columns: Tuple[str, ...] = ()
    new_column: Optional[str] = None
    definition: Optional[str] = None
    phase_hint: Optional[Phase] = None
    statement: Optional[str] = None
    index_name: Optional[str] = None
    concurrent: bool = False
    unique: bool = False
    where: Optional[str] = None
    constraint_name: Optional[str] = None
    operation_id: str = ""

    @property
    def known(self) -> bool:
        return isinstance(self.kind, OperationKind)

    @property
    def kind_name(self) -> str:
        return self.kind.value if isinstance(self.kind, OperationKind) else str(self.kind)

    @property
    def column(self) -> Optional[str]:
        return self.columns[0] if self.columns else None

    @property
    def nullable(self) -> bool:
        words = [word for _, word in definition_keywords(self.definition)]
        if "NOT NULL" in words:
            return False
        return not any(a == "NOT" and b == "NULL" for a, b in zip(words, words[1:]))

    @property
    def has_default(self) -> bool:
        return any(word == "DEFAULT" for _, word in definition_keywords(self.definition))

    @property
    def column_type(self) -> Optional[str]:
        """Type portion of the definition, without NOT NULL / DEFAULT clauses."""
        if not self.definition:
            return None
        cut = len(self.definition)
        for offset, word in definition_keywords(self.definition):
            if word in _CLAUSE_KEYWORDS:
                cut = offset
                break
        return self.definition[:cut].strip() or None

    def describe(self) -> str:
        target = self.table
        if self.columns:
            target += "." + ",".join(self.columns)
        if self.new_column:
            target += f" -> {self.new_column}"
        return f"{self.kind_name} {target}"


@dataclass(frozen=True)
class IndexSpec:
    """Requested index: table, column expression and options."""
    table: str
    columns: Tuple[str, ...]
    name: Optional[str] = None
    unique: bool = False
    where: Optional[str] = None


@dataclass(frozen=True)
class BackfillSnapshot:
    """Measured outcome of a verification query for one plan."""
    total_rows: int
    mismatched_rows: int
    source_checksum: str
    target_checksum: str
    details: dict = field(default_factory=dict, compare=False, hash=False)
