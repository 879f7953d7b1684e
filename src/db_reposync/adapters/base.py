"""Collaborator protocol definitions.

Defines the Protocols the sync orchestrator talks to:

- ``DatabaseIntrospector``: reads schema objects from a database and opens
  a transaction that yields an ``ObjectApplier``
- ``ObjectApplier``: replaces or drops single objects inside that transaction
- ``RepositoryStore``: reads ``.sql`` files from the repository and writes
  them back as one atomic commit

Database access is ``async def``; repository access is blocking and is
moved off the event loop with ``asyncio.to_thread`` by the orchestrator.

Usage:
    from db_reposync.adapters.base import DatabaseIntrospector, RepositoryStore

    async def snapshot(introspector: DatabaseIntrospector, db_name: str) -> int:
        return len(await introspector.list_objects(db_name))
"""

from collections.abc import Iterable, Mapping
from contextlib import AbstractAsyncContextManager
from typing import Protocol

from db_reposync.schema.models import DbObject, ObjectIdentity, RepoObject


class ObjectApplier(Protocol):
    """Writes single objects inside an open database transaction."""

    async def apply_object(self, obj: DbObject) -> bool:
        """Replace ``obj`` in the database with its definition.

        Drops any existing object with the same identity, then runs the
        definition's ``GO``-separated batches.

        Returns:
            ``True`` if an existing object was replaced, ``False`` if it
            was created.
        """
        ...

    async def drop_object(self, identity: ObjectIdentity) -> None:
        """Drop the object if it exists."""
        ...


class DatabaseIntrospector(Protocol):
    """Reads and writes schema objects of registered databases.

    Implementations route to the database named by ``db_name``.
    """

    async def list_objects(self, db_name: str) -> list[DbObject]:
        """Read every tracked schema object of the database.

        Returns:
            One ``DbObject`` per (schema, name, type), definitions as
            ``CREATE`` scripts.
        """
        ...

    def transaction(
        self, db_name: str
    ) -> AbstractAsyncContextManager[ObjectApplier]:
        """Open one database transaction.

        Commits when the block exits normally, rolls back when it raises.

        Example:
            async with introspector.transaction("db1") as applier:
                await applier.apply_object(obj)
        """
        ...

    async def close(self) -> None:
        """Dispose of connection pools."""
        ...


class RepositoryStore(Protocol):
    """Version-controlled tree of ``.sql`` files.

    ``ref`` arguments accept anything the store can resolve (branch, tag,
    commit id). Markers are per-database tags recording the commit of the
    last successful sync.
    """

    def list_objects(self, prefix: str, ref: str | None = None) -> list[RepoObject]:
        """List ``.sql`` files under ``prefix`` at ``ref`` (default: branch head).

        Returned paths are relative to ``prefix``.
        """
        ...

    def read_file(self, path: str, ref: str | None = None) -> str | None:
        """Content of one file at ``ref``, ``None`` when it does not exist."""
        ...

    def commit(
        self,
        writes: Mapping[str, str],
        deletes: Iterable[str],
        message: str,
        author: str,
        branch: str | None = None,
        markers: Iterable[str] = (),
    ) -> str:
        """Write and delete files as exactly one commit.

        The branch and every marker in ``markers`` move to the new commit
        together, or nothing moves.

        Args:
            writes: Repository path -> file content.
            deletes: Repository paths to remove.
            message: Commit message.
            author: ``"Name <email>"``.
            branch: Branch to commit on (default: the store's branch).
            markers: Marker names to point at the new commit.

        Returns:
            The new commit id.
        """
        ...

    def head(self, branch: str | None = None) -> str | None:
        """Commit id at the tip of ``branch``, ``None`` for an unborn branch."""
        ...

    def marker(self, name: str) -> str | None:
        """Commit id recorded by marker ``name``, ``None`` when unset."""
        ...

    def resolve(self, ref: str) -> str | None:
        """Commit id ``ref`` points at, ``None`` when it does not exist."""
        ...

    def set_markers(self, names: Iterable[str], commit_id: str) -> None:
        """Point every marker in ``names`` at ``commit_id`` atomically."""
        ...
