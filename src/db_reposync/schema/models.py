"""Models for schema objects, reconciliation results, and sync reports.

This module contains sync-domain models:
- Object model: DbObjectType, ObjectIdentity, DbObject, RepoObject
- Reconciliation: ObjectStatus, SyncDirection, PlanAction, PlanEntry,
  ReconciliationResult
- Reports: ObjectOutcome, SyncSummary, SyncStatus, SyncResult, SyncError

Value objects that are used as dict keys or compared by identity are frozen
dataclasses; reports handed back to callers are pydantic models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

SQL_FILE_EXTENSION = ".sql"


# ============================================================================
# Object Model
# ============================================================================


class DbObjectType(str, Enum):
    """Kinds of schema objects tracked in the repository.

    Values are the lower-case tokens used as the first path segment.
    """

    TABLE = "table"
    TYPE = "type"
    SYNONYM = "synonym"
    SEQUENCE = "sequence"
    VIEW = "view"
    FUNCTION = "function"
    PROCEDURE = "procedure"
    TRIGGER = "trigger"

    @classmethod
    def from_token(cls, token: str) -> "DbObjectType":
        """Match a path token case-insensitively.

        Raises:
            ValueError: If the token names no known type.
        """
        return cls(token.strip().lower())


# Order in which repo -> db syncs apply objects. Objects that others are
# built on (tables, types) go first, objects that hang off them (triggers)
# go last.
APPLY_ORDER: tuple[DbObjectType, ...] = (
    DbObjectType.TABLE,
    DbObjectType.TYPE,
    DbObjectType.SYNONYM,
    DbObjectType.SEQUENCE,
    DbObjectType.VIEW,
    DbObjectType.FUNCTION,
    DbObjectType.PROCEDURE,
    DbObjectType.TRIGGER,
)

_APPLY_RANK = {object_type: rank for rank, object_type in enumerate(APPLY_ORDER)}


@dataclass(frozen=True)
class ObjectIdentity:
    """Identity of a schema object: (schema, name, type).

    Example:
        >>> ident = ObjectIdentity("dbo", "proc1", DbObjectType.PROCEDURE)
        >>> ident.path
        'procedure/dbo/proc1.sql'
    """

    schema: str
    name: str
    type: DbObjectType

    @property
    def path(self) -> str:
        """Repository path relative to a database subtree."""
        return f"{self.type.value}/{self.schema}/{self.name}{SQL_FILE_EXTENSION}"

    @property
    def sort_key(self) -> tuple[int, str, str]:
        """Declared apply order, then schema, then name."""
        return (_APPLY_RANK[self.type], self.schema, self.name)

    def __str__(self) -> str:
        return f"{self.type.value}:{self.schema}.{self.name}"


@dataclass(frozen=True)
class DbObject:
    """A named database schema entity and its definition text."""

    schema: str
    name: str
    type: DbObjectType
    definition: str

    @property
    def identity(self) -> ObjectIdentity:
        return ObjectIdentity(self.schema, self.name, self.type)

    def __repr__(self) -> str:
        # Definitions can be thousands of lines; keep reprs readable.
        return f"DbObject(schema={self.schema!r}, name={self.name!r}, type={self.type.value})"


@dataclass(frozen=True)
class RepoObject:
    """A ``.sql`` file in a database's subtree of the repository."""

    path: str
    definition: str

    def __repr__(self) -> str:
        return f"RepoObject(path={self.path!r})"


# ============================================================================
# Reconciliation
# ============================================================================


class ObjectStatus(str, Enum):
    """Classification of one identity after reconciliation."""

    IN_SYNC = "in_sync"
    ADDED_IN_DB = "added_in_db"
    ADDED_IN_REPO = "added_in_repo"
    REMOVED_IN_DB = "removed_in_db"
    REMOVED_IN_REPO = "removed_in_repo"
    CONFLICTING = "conflicting"


class SyncDirection(str, Enum):
    """Which side is written by a sync."""

    EXPORT = "export"  # database -> repository, database is authoritative
    APPLY = "apply"  # repository -> database, guarded by conflict detection


class PlanAction(str, Enum):
    """What to do with one identity on the written side."""

    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True)
class PlanEntry:
    """One step of a sync plan.

    ``payload`` is the definition to write for ``UPSERT`` and ``None`` for
    ``DELETE``.
    """

    identity: ObjectIdentity
    action: PlanAction
    payload: str | None = None

    @property
    def path(self) -> str:
        return self.identity.path

    def describe(self) -> str:
        return f"{self.action.value} {self.path}"


@dataclass
class ReconciliationResult:
    """Outcome of comparing a database snapshot with its repository subtree.

    A result either carries a plan that can be applied, or a non-empty
    ``conflicts`` list that must block a repo -> db apply. Callers branch on
    ``has_conflicts`` instead of catching an exception.

    Attributes:
        direction: Sync direction the comparison was made for.
        statuses: Classification for every owned identity on either side.
        plan: Ordered steps that make the written side match.
        conflicts: Identities whose live definition drifted from what the
            repository expects to overwrite (apply direction only).
    """

    direction: SyncDirection
    statuses: dict[ObjectIdentity, ObjectStatus] = field(default_factory=dict)
    plan: list[PlanEntry] = field(default_factory=list)
    conflicts: list[ObjectIdentity] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def has_changes(self) -> bool:
        return bool(self.plan)

    def with_status(self, status: ObjectStatus) -> list[ObjectIdentity]:
        """Identities carrying ``status``, in apply order."""
        return sorted(
            (ident for ident, s in self.statuses.items() if s is status),
            key=lambda ident: ident.sort_key,
        )

    def describe_plan(self) -> list[str]:
        return [entry.describe() for entry in self.plan]

    def format_report(self) -> str:
        """Format the result as a human-readable report."""
        if not self.plan and not self.conflicts:
            return "In sync"

        lines = [f"Reconciliation ({self.direction.value}):"]

        if self.conflicts:
            lines.append(f"\n  Conflicting ({len(self.conflicts)}):")
            for ident in self.conflicts:
                lines.append(f"    - {ident.path}")

        if self.plan:
            lines.append(f"\n  Planned changes ({len(self.plan)}):")
            for entry in self.plan:
                lines.append(f"    - {entry.describe()}")

        return "\n".join(lines)


# ============================================================================
# Reports
# ============================================================================


class ObjectOutcome(BaseModel):
    """Result of applying one plan entry to a database."""

    path: str
    action: PlanAction
    status: Literal["created", "replaced", "dropped"]


class SyncSummary(BaseModel):
    """Summary returned by both sync directions.

    Example:
        >>> summary = SyncSummary(db_name="db1", dry_run=True,
        ...                       result_description="[]", message="No changes")
        >>> summary.changes
        []
    """

    db_name: str
    dry_run: bool
    result_description: str
    message: str
    changes: list[str] = Field(default_factory=list)
    outcomes: list[ObjectOutcome] = Field(default_factory=list)
    commit_id: str | None = None


class SyncStatus(str, Enum):
    """Per-database status of a multi-database repo -> db sync."""

    SYNCED = "synced"
    SUCCESS_DRY_RUN = "success_dry_run"
    SKIPPED_NOT_ONBOARDED = "skipped_not_onboarded"
    SKIPPED_OUT_OF_SYNC = "skipped_out_of_sync"
    FAILED = "failed"


class SyncResult(BaseModel):
    """Result of syncing the repository to one database of a batch."""

    db_name: str
    status: SyncStatus
    message: str = ""


class SyncError(BaseModel):
    """Structured error returned by the request boundary.

    Attributes:
        kind: Exception class name (e.g. ``DbOutOfSyncException``).
        message: Human-readable error message.
        bad_input: True when the caller supplied an invalid name or path.
    """

    kind: str
    message: str
    bad_input: bool = False
