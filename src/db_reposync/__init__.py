"""db-reposync: Bidirectional schema sync between SQL Server and git.

Exports database objects (tables, types, synonyms, sequences, views,
functions, procedures, triggers) as ``.sql`` files into a git repository and
applies the repository back to databases, with drift detection against the
commit each database was last synced at.

Usage:
    from db_reposync import build_orchestrator, DbOutOfSyncException

    orchestrator = build_orchestrator()
    summary = await orchestrator.sync_db_to_repo("db1", dry_run=True)
"""

__version__ = "0.1.0"

# Adapters
from db_reposync.adapters.base import DatabaseIntrospector, ObjectApplier, RepositoryStore
from db_reposync.adapters.git import GitCommandError, GitRepositoryStore

# Config
from db_reposync.config.loader import load_config
from db_reposync.config.models import ReposyncConfig, SyncSettings

# Context
from db_reposync.context import (
    DatabaseContextRouter,
    DatabaseRegistry,
    UnknownDatabaseError,
    current_database,
)

# Factory
from db_reposync.factory import build_orchestrator, refresh_registry, resolve_url

# Schema
from db_reposync.schema.comparator import reconcile
from db_reposync.schema.models import (
    DbObject,
    DbObjectType,
    ObjectIdentity,
    ObjectStatus,
    ReconciliationResult,
    RepoObject,
    SyncDirection,
    SyncError,
    SyncResult,
    SyncStatus,
    SyncSummary,
)
from db_reposync.schema.paths import InvalidPathError, from_path, to_path
from db_reposync.schema.sync import (
    DbNotOnboardedException,
    DbOutOfSyncException,
    SynchronizationException,
    SyncOrchestrator,
    request_sync_db_to_repo,
    request_sync_repo_to_db,
)

__all__ = [
    # Adapters
    "DatabaseIntrospector",
    "ObjectApplier",
    "RepositoryStore",
    "GitRepositoryStore",
    "GitCommandError",
    # Config
    "load_config",
    "ReposyncConfig",
    "SyncSettings",
    # Context
    "DatabaseRegistry",
    "DatabaseContextRouter",
    "UnknownDatabaseError",
    "current_database",
    # Factory
    "build_orchestrator",
    "refresh_registry",
    "resolve_url",
    # Schema
    "reconcile",
    "from_path",
    "to_path",
    "InvalidPathError",
    "DbObject",
    "DbObjectType",
    "ObjectIdentity",
    "ObjectStatus",
    "ReconciliationResult",
    "RepoObject",
    "SyncDirection",
    "SyncSummary",
    "SyncResult",
    "SyncStatus",
    "SyncError",
    # Sync
    "SyncOrchestrator",
    "SynchronizationException",
    "DbNotOnboardedException",
    "DbOutOfSyncException",
    "request_sync_db_to_repo",
    "request_sync_repo_to_db",
]
