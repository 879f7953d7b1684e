"""Schema objects, path mapping, normalization, and reconciliation.

Pure logic only; the SQL Server introspector and the sync orchestrator live
in ``db_reposync.schema.introspector`` and ``db_reposync.schema.sync``.

Usage:
    from db_reposync.schema import reconcile, from_path, definitions_equal
"""

from db_reposync.schema.comparator import is_owned, reconcile
from db_reposync.schema.models import (
    APPLY_ORDER,
    DbObject,
    DbObjectType,
    ObjectIdentity,
    ObjectStatus,
    PlanAction,
    PlanEntry,
    ReconciliationResult,
    RepoObject,
    SyncDirection,
)
from db_reposync.schema.normalize import definitions_equal, normalize_sql
from db_reposync.schema.paths import InvalidPathError, from_path, identity_from_path, to_path

__all__ = [
    "reconcile",
    "is_owned",
    "definitions_equal",
    "normalize_sql",
    "from_path",
    "to_path",
    "identity_from_path",
    "InvalidPathError",
    "APPLY_ORDER",
    "DbObject",
    "DbObjectType",
    "ObjectIdentity",
    "ObjectStatus",
    "PlanAction",
    "PlanEntry",
    "ReconciliationResult",
    "RepoObject",
    "SyncDirection",
]
