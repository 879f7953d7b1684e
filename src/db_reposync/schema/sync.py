"""Bidirectional sync between databases and the schema repository.

Two entry operations, each for one database and a ``dry_run`` flag:

- ``sync_db_to_repo``: the database is authoritative. Differences are written
  to the repository as one commit that also moves the database's sync
  marker. Never blocked by conflicts.
- ``sync_repo_to_db``: the repository is applied to the database inside one
  transaction, in the declared apply order. Blocked with
  ``DbOutOfSyncException`` when the live database drifted from the state
  recorded at its last sync.

The sync marker of a database (a tag named after it) records the commit the
database last matched; its tree is the baseline used to tell database-side
drift from repository-side changes.

Every operation binds the database through the context router, holds a
per-database lock, and reads everything fresh.

Usage:
    from db_reposync.schema.sync import SyncOrchestrator

    orchestrator = SyncOrchestrator(router, introspector, store, settings)

    summary = await orchestrator.sync_db_to_repo("db1", dry_run=True)
    print(summary.result_description)

    try:
        await orchestrator.sync_repo_to_db("db1")
    except DbOutOfSyncException as e:
        print(e.conflicts)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from sqlalchemy.exc import SQLAlchemyError

from db_reposync.adapters.base import DatabaseIntrospector, RepositoryStore
from db_reposync.adapters.git import GitCommandError
from db_reposync.config.models import SyncSettings
from db_reposync.context import (
    DatabaseContextRouter,
    UnknownDatabaseError,
    current_database,
)
from db_reposync.schema.comparator import parse_ignore_patterns, reconcile
from db_reposync.schema.models import (
    DbObject,
    ObjectIdentity,
    ObjectOutcome,
    PlanAction,
    ReconciliationResult,
    RepoObject,
    SyncDirection,
    SyncError,
    SyncResult,
    SyncStatus,
    SyncSummary,
)
from db_reposync.schema.paths import InvalidPathError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================================
# Exceptions
# ============================================================================


class SynchronizationException(Exception):
    """Base class for sync failures."""


class DbNotOnboardedException(SynchronizationException):
    """Raised when a database has no sync marker in the repository."""

    def __init__(self, db_name: str) -> None:
        super().__init__(
            f"The database '{db_name}' has not been onboarded to the repository yet"
        )
        self.db_name = db_name


class DbOutOfSyncException(SynchronizationException):
    """Raised when live objects drifted from what the repository would overwrite."""

    def __init__(self, db_name: str, conflicts: Iterable[ObjectIdentity]) -> None:
        self.db_name = db_name
        self.conflicts: list[ObjectIdentity] = list(conflicts)
        paths = ", ".join(ident.path for ident in self.conflicts)
        super().__init__(
            f"The database '{db_name}' has out-of-sync objects: {paths}"
        )


# Failures of collaborators that become SynchronizationException
_WRAPPED_ERRORS = (GitCommandError, SQLAlchemyError, OSError, ValueError)


# ============================================================================
# Orchestrator
# ============================================================================


class SyncOrchestrator:
    """Drives both sync directions for registered databases.

    Args:
        router: Binds the active database for each operation.
        introspector: Reads and writes database objects.
        store: Reads and commits repository files.
        settings: Owned prefixes, subtree layout, branch, and author.
    """

    def __init__(
        self,
        router: DatabaseContextRouter,
        introspector: DatabaseIntrospector,
        store: RepositoryStore,
        settings: SyncSettings,
    ) -> None:
        self.router = router
        self.introspector = introspector
        self.store = store
        self.settings = settings
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _run(self, db_name: str, action: Callable[[], Awaitable[T]]) -> T:
        """Run ``action`` with ``db_name`` bound, holding the database's lock.

        Collaborator failures are wrapped in ``SynchronizationException``.
        """
        self.router.registry.require(db_name)
        lock = self._locks.setdefault(db_name, asyncio.Lock())
        async with lock:
            try:
                return await self.router.run_with_database(db_name, action)
            except (SynchronizationException, UnknownDatabaseError, InvalidPathError):
                raise
            except _WRAPPED_ERRORS as e:
                raise SynchronizationException(
                    f"Sync of database '{db_name}' failed: {e}"
                ) from e

    async def _git(self, func: Callable[..., T], *args, **kwargs) -> T:
        # Blocking git I/O runs in a worker thread (context is copied)
        return await asyncio.to_thread(func, *args, **kwargs)

    async def _repo_objects(self, db_name: str, ref: str | None) -> list[RepoObject]:
        if ref is None:
            return []
        return await self._git(self.store.list_objects, self.settings.subtree(db_name), ref)

    async def _ignore_patterns(self, ref: str | None) -> tuple[str, ...]:
        if not self.settings.ignore_file or ref is None:
            return ()
        content = await self._git(self.store.read_file, self.settings.ignore_file, ref)
        return parse_ignore_patterns(content) if content else ()

    async def _reconcile(
        self,
        db_name: str,
        direction: SyncDirection,
        head: str | None,
        marker: str | None,
    ) -> ReconciliationResult:
        db_objects = await self.introspector.list_objects(db_name)
        repo_objects = await self._repo_objects(db_name, head)
        baseline = await self._repo_objects(db_name, marker) if marker else None
        ignore_patterns = await self._ignore_patterns(head)

        return reconcile(
            db_objects,
            repo_objects,
            owned_prefixes=self.settings.owned_prefixes,
            direction=direction,
            baseline=baseline,
            default_schema=self.settings.default_schema,
            ignore_patterns=ignore_patterns,
        )

    def _repo_path(self, db_name: str, relative_path: str) -> str:
        return f"{self.settings.subtree(db_name)}/{relative_path}"

    async def _commit_plan(
        self, db_name: str, result: ReconciliationResult, message: str
    ) -> str:
        writes = {
            self._repo_path(db_name, entry.path): entry.payload
            for entry in result.plan
            if entry.action is PlanAction.UPSERT
        }
        deletes = [
            self._repo_path(db_name, entry.path)
            for entry in result.plan
            if entry.action is PlanAction.DELETE
        ]
        return await self._git(
            self.store.commit,
            writes,
            deletes,
            message,
            self.settings.author,
            branch=self.settings.branch,
            markers=[db_name],
        )

    # ------------------------------------------------------------------
    # Database -> repository
    # ------------------------------------------------------------------

    async def sync_db_to_repo(self, db_name: str, dry_run: bool = False) -> SyncSummary:
        """Export the database's owned objects to its repository subtree.

        Args:
            db_name: Registered database name.
            dry_run: Report the plan without touching the repository.

        Returns:
            SyncSummary listing the planned (or committed) file changes.

        Raises:
            UnknownDatabaseError: If ``db_name`` is not registered.
            SynchronizationException: If reading or committing fails.
        """
        return await self._run(db_name, lambda: self._db_to_repo(dry_run))

    async def _db_to_repo(self, dry_run: bool) -> SyncSummary:
        db_name = current_database()
        logger.info("Syncing database '%s' to repository (dry_run: %s)", db_name, dry_run)

        head = await self._git(self.store.head, self.settings.branch)
        marker = await self._git(self.store.marker, db_name)
        result = await self._reconcile(db_name, SyncDirection.EXPORT, head, marker)
        changes = result.describe_plan()

        summary = SyncSummary(
            db_name=db_name,
            dry_run=dry_run,
            result_description=result.format_report(),
            message="",
            changes=changes,
        )

        if dry_run:
            summary.message = f"Dry run: {len(changes)} change(s) detected"
            logger.info("Dry run detected %d changes for database '%s'", len(changes), db_name)
            return summary

        if result.has_changes:
            summary.commit_id = await self._commit_plan(
                db_name, result, f"Repo synced with DB: {db_name}"
            )
            summary.message = f"Committed {len(changes)} change(s)"
            logger.info(
                "Synced %d objects from database '%s' to repository", len(changes), db_name
            )
            return summary

        if head is not None and marker != head:
            await self._git(self.store.set_markers, [db_name], head)
            logger.info("Database '%s' matches the repository, marker moved to head", db_name)
        summary.message = "No changes"
        logger.info("No changes detected for database '%s'", db_name)
        return summary

    async def init_repo(self, db_name: str) -> SyncSummary:
        """Seed an empty subtree from the database and onboard it.

        Raises:
            SynchronizationException: If the subtree already holds files or
                the database has no owned objects.
        """
        return await self._run(db_name, self._init_repo)

    async def _init_repo(self) -> SyncSummary:
        db_name = current_database()
        logger.info("Initializing repository with database: %s", db_name)

        head = await self._git(self.store.head, self.settings.branch)
        if await self._repo_objects(db_name, head):
            raise SynchronizationException(
                f"Cannot initialize non-empty subtree '{self.settings.subtree(db_name)}'"
            )

        result = await self._reconcile(db_name, SyncDirection.EXPORT, head, None)
        if not result.has_changes:
            raise SynchronizationException(
                f"No database objects found in database: {db_name}"
            )

        commit_id = await self._commit_plan(
            db_name, result, f"Repo initialized with DB: {db_name}"
        )
        logger.info("Initialized repository with database '%s' at %s", db_name, commit_id[:12])
        return SyncSummary(
            db_name=db_name,
            dry_run=False,
            result_description=result.format_report(),
            message=f"Initialized with {len(result.plan)} object(s)",
            changes=result.describe_plan(),
            commit_id=commit_id,
        )

    # ------------------------------------------------------------------
    # Repository -> database
    # ------------------------------------------------------------------

    async def sync_repo_to_db(
        self, db_name: str, dry_run: bool = False, ref: str | None = None
    ) -> SyncSummary:
        """Apply the repository head (or another revision) to the database.

        Args:
            db_name: Registered, onboarded database name.
            dry_run: Report the plan without touching the database.
            ref: Revision to apply (default: branch head). A revision other
                than the head is only ever dry-run.

        Returns:
            SyncSummary with per-object outcomes.

        Raises:
            UnknownDatabaseError: If ``db_name`` is not registered.
            DbNotOnboardedException: If the database has no sync marker.
            DbOutOfSyncException: If any owned object drifted. Nothing is
                written, even for objects that did not drift.
            SynchronizationException: If reading or applying fails; the
                database transaction is rolled back and the marker stays.
        """
        return await self._run(db_name, lambda: self._repo_to_db(dry_run, ref))

    async def _repo_to_db(self, dry_run: bool, ref: str | None) -> SyncSummary:
        db_name = current_database()
        logger.info("Syncing repository to database '%s' (dry_run: %s)", db_name, dry_run)

        marker = await self._git(self.store.marker, db_name)
        if marker is None:
            raise DbNotOnboardedException(db_name)

        head = await self._git(self.store.head, self.settings.branch)
        if head is None:
            raise SynchronizationException(
                f"Branch '{self.settings.branch}' has no commits"
            )
        target = head
        if ref is not None:
            target = await self._git(self.store.resolve, ref)
            if target is None:
                raise SynchronizationException(f"Unknown revision '{ref}'")
            if target != head and not dry_run:
                logger.info("Revision '%s' is not the branch head, forcing dry run", ref)
                dry_run = True

        result = await self._reconcile(db_name, SyncDirection.APPLY, target, marker)
        if result.has_conflicts:
            raise DbOutOfSyncException(db_name, result.conflicts)

        changes = result.describe_plan()
        summary = SyncSummary(
            db_name=db_name,
            dry_run=dry_run,
            result_description=result.format_report(),
            message="",
            changes=changes,
            commit_id=target,
        )

        if dry_run:
            summary.message = f"Dry run: {len(changes)} change(s) to apply"
            return summary

        if not result.has_changes:
            if marker != target:
                await self._git(self.store.set_markers, [db_name], target)
            summary.message = "Already in sync"
            logger.info("Database '%s' already in sync with repository head", db_name)
            return summary

        outcomes: list[ObjectOutcome] = []
        async with self.introspector.transaction(db_name) as applier:
            for entry in result.plan:
                ident = entry.identity
                if entry.action is PlanAction.UPSERT:
                    replaced = await applier.apply_object(
                        DbObject(ident.schema, ident.name, ident.type, entry.payload)
                    )
                    status = "replaced" if replaced else "created"
                else:
                    await applier.drop_object(ident)
                    status = "dropped"
                outcomes.append(ObjectOutcome(path=entry.path, action=entry.action, status=status))

        # Only a committed transaction moves the marker
        await self._git(self.store.set_markers, [db_name], target)

        summary.outcomes = outcomes
        summary.message = f"Applied {len(outcomes)} change(s)"
        logger.info("Applied %d changes to database '%s' and moved marker", len(outcomes), db_name)
        return summary

    async def sync_repo_to_dbs(
        self, db_names: Iterable[str], dry_run: bool = False, ref: str | None = None
    ) -> list[SyncResult]:
        """Apply the repository head (or ``ref``) to several databases concurrently.

        A failing database never stops the others; each gets a ``SyncResult``.
        """
        db_names = list(db_names)
        if not db_names:
            return []

        async def sync_one(db_name: str) -> SyncResult:
            try:
                summary = await self.sync_repo_to_db(db_name, dry_run, ref)
            except DbNotOnboardedException as e:
                logger.warning("Database '%s' is not onboarded, skipping", db_name)
                return SyncResult(db_name=db_name, status=SyncStatus.SKIPPED_NOT_ONBOARDED, message=str(e))
            except DbOutOfSyncException as e:
                logger.warning("Database '%s' is out of sync, skipping", db_name)
                return SyncResult(db_name=db_name, status=SyncStatus.SKIPPED_OUT_OF_SYNC, message=str(e))
            except (SynchronizationException, UnknownDatabaseError, InvalidPathError) as e:
                logger.error("Failed to sync database '%s': %s", db_name, e)
                return SyncResult(db_name=db_name, status=SyncStatus.FAILED, message=str(e))

            status = SyncStatus.SUCCESS_DRY_RUN if summary.dry_run else SyncStatus.SYNCED
            return SyncResult(db_name=db_name, status=status, message=summary.message)

        results = list(await asyncio.gather(*(sync_one(name) for name in db_names)))

        synced = sum(r.status in (SyncStatus.SYNCED, SyncStatus.SUCCESS_DRY_RUN) for r in results)
        skipped = sum(r.status.value.startswith("skipped") for r in results)
        failed = sum(r.status is SyncStatus.FAILED for r in results)
        logger.info(
            "Sync summary - Total: %d, Synced: %d, Skipped: %d, Failed: %d",
            len(results), synced, skipped, failed,
        )
        return results

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def inspect(self, db_name: str) -> ReconciliationResult:
        """Reconcile in apply mode without writing or raising on conflicts."""
        return await self._run(db_name, self._inspect)

    async def _inspect(self) -> ReconciliationResult:
        db_name = current_database()
        head = await self._git(self.store.head, self.settings.branch)
        marker = await self._git(self.store.marker, db_name)
        return await self._reconcile(db_name, SyncDirection.APPLY, head, marker)

    def is_onboarded(self, db_name: str) -> bool:
        return self.store.marker(db_name) is not None


# ============================================================================
# Request boundary
# ============================================================================


# Failures reported to callers instead of raised
REQUEST_ERRORS = (SynchronizationException, UnknownDatabaseError, InvalidPathError)


def to_sync_error(e: Exception) -> SyncError:
    """Describe a failure; unknown databases and bad paths are bad input."""
    bad_input = isinstance(e, (UnknownDatabaseError, InvalidPathError))
    return SyncError(kind=type(e).__name__, message=str(e), bad_input=bad_input)


async def request_sync_db_to_repo(
    orchestrator: SyncOrchestrator, db_name: str, dry_run: bool = False
) -> SyncSummary | SyncError:
    """Run ``sync_db_to_repo`` and turn known failures into a ``SyncError``."""
    try:
        return await orchestrator.sync_db_to_repo(db_name, dry_run)
    except REQUEST_ERRORS as e:
        return to_sync_error(e)


async def request_sync_repo_to_db(
    orchestrator: SyncOrchestrator,
    db_name: str,
    dry_run: bool = False,
    ref: str | None = None,
) -> SyncSummary | SyncError:
    """Run ``sync_repo_to_db`` and turn known failures into a ``SyncError``."""
    try:
        return await orchestrator.sync_repo_to_db(db_name, dry_run, ref)
    except REQUEST_ERRORS as e:
        return to_sync_error(e)
