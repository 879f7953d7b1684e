"""Per-operation binding of the active database.

The active database is carried in a ``contextvars.ContextVar``: every asyncio
task and every thread sees its own binding, so concurrent syncs against
different databases never observe each other's selection. A binding only
exists for the duration of one ``run_with_database`` call (or one
``use_database`` block) and is reset on every exit path.

Usage:
    from db_reposync.context import DatabaseContextRouter, DatabaseRegistry

    registry = DatabaseRegistry({"db1", "db2"})
    router = DatabaseContextRouter(registry)

    async def export() -> str:
        return current_database()

    await router.run_with_database("db1", export)  # 'db1'
"""

import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_active_database: ContextVar[str | None] = ContextVar(
    "db_reposync_active_database", default=None
)


class UnknownDatabaseError(LookupError):
    """Raised when a database name is not in the registry."""

    def __init__(self, db_name: str, available: Iterable[str] = ()) -> None:
        names = ", ".join(sorted(available)) or "none"
        super().__init__(
            f"Database '{db_name}' is not onboarded. Available: {names}"
        )
        self.db_name = db_name


class NoActiveDatabaseError(RuntimeError):
    """Raised when code needs the active database outside of a binding."""


class DatabaseRegistry:
    """Set of database names known to this process.

    The set is immutable; ``refresh`` swaps it out as a whole, so readers
    always see either the old or the new set.
    """

    def __init__(self, names: Iterable[str] = ()) -> None:
        self._names: frozenset[str] = frozenset(names)

    @property
    def names(self) -> frozenset[str]:
        return self._names

    def refresh(self, names: Iterable[str]) -> None:
        """Replace the registered names."""
        self._names = frozenset(names)
        logger.debug("Database registry refreshed: %s", sorted(self._names))

    def require(self, db_name: str) -> None:
        """Raise ``UnknownDatabaseError`` unless ``db_name`` is registered."""
        if db_name not in self._names:
            raise UnknownDatabaseError(db_name, self._names)

    def __contains__(self, db_name: object) -> bool:
        return db_name in self._names

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._names))

    def __len__(self) -> int:
        return len(self._names)


class DatabaseContextRouter:
    """Bind a registered database as active for the duration of an action."""

    def __init__(self, registry: DatabaseRegistry) -> None:
        self.registry = registry

    async def run_with_database(
        self,
        db_name: str,
        action: Callable[[], Awaitable[T]],
    ) -> T:
        """Await ``action()`` with ``db_name`` bound as the active database.

        Args:
            db_name: Registered database name.
            action: Zero-argument coroutine function.

        Returns:
            Whatever ``action()`` returns.

        Raises:
            UnknownDatabaseError: If ``db_name`` is not registered.
        """
        self.registry.require(db_name)
        token = _active_database.set(db_name)
        try:
            return await action()
        finally:
            _active_database.reset(token)

    @contextmanager
    def use_database(self, db_name: str) -> Iterator[str]:
        """Bind ``db_name`` for a ``with`` block (synchronous code, threads)."""
        self.registry.require(db_name)
        token = _active_database.set(db_name)
        try:
            yield db_name
        finally:
            _active_database.reset(token)


def current_database() -> str:
    """Return the active database name.

    Raises:
        NoActiveDatabaseError: If no database is bound in this context.
    """
    db_name = _active_database.get()
    if db_name is None:
        raise NoActiveDatabaseError("No database is active in this context")
    return db_name


def active_database() -> str | None:
    """Return the active database name, or ``None`` when unbound."""
    return _active_database.get()
