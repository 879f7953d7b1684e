"""SQL Server engine creation and per-database routing.

Provides ``create_async_engine_pooled`` for the ``mssql+aioodbc`` dialect and
``EngineRouter``, which keeps one pooled ``AsyncEngine`` per registered
database and hands out the engine for a database name.

Usage:
    from db_reposync.adapters.mssql import EngineRouter

    router = EngineRouter({
        "db1": "mssql+aioodbc://sa:pw@host/db1?driver=ODBC+Driver+18+for+SQL+Server",
    })
    engine = router.engine("db1")
    await router.close()
"""

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

ASYNC_SCHEME = "mssql+aioodbc://"


def normalize_url(database_url: str) -> str:
    """Rewrite ``mssql://`` and ``mssql+pyodbc://`` URLs to ``mssql+aioodbc://``.

    Examples:
        >>> normalize_url("mssql://sa:pw@host/db1")
        'mssql+aioodbc://sa:pw@host/db1'
        >>> normalize_url("mssql+aioodbc://sa:pw@host/db1")
        'mssql+aioodbc://sa:pw@host/db1'
    """
    for scheme in ("mssql+pyodbc://", "mssql://"):
        if database_url.startswith(scheme):
            return ASYNC_SCHEME + database_url[len(scheme):]
    return database_url


def create_async_engine_pooled(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async SQLAlchemy engine with connection pooling.

    Default pool settings:

    - ``pool_size=5``: Reasonable default for typical workloads.
    - ``max_overflow=10``: Allow burst connections.
    - ``pool_pre_ping=True``: Validate connections before checkout.
    - ``pool_recycle=300``: Recycle connections every 5 minutes.

    Args:
        database_url: SQL Server connection URL. ``mssql://`` and
            ``mssql+pyodbc://`` are rewritten to ``mssql+aioodbc://``.
        **kwargs: Additional keyword arguments forwarded to
            ``create_async_engine``.

    Returns:
        Configured ``AsyncEngine``.

    Example:
        engine = create_async_engine_pooled(
            "mssql+aioodbc://sa:pw@localhost/db1?driver=ODBC+Driver+18+for+SQL+Server"
        )
    """
    database_url = normalize_url(database_url)

    defaults: dict[str, Any] = {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "echo": False,
        # ODBC login timeout in seconds
        "connect_args": {"timeout": 5},
    }
    # Caller kwargs override defaults
    merged = {**defaults, **kwargs}

    return create_async_engine(database_url, **merged)


class EngineRouter:
    """Lazily created engine per database name.

    Args:
        urls: Database name -> connection URL (passwords already resolved).
        **engine_kwargs: Forwarded to ``create_async_engine_pooled``.
    """

    def __init__(self, urls: Mapping[str, str], **engine_kwargs: Any) -> None:
        self._urls: dict[str, str] = dict(urls)
        self._engine_kwargs = engine_kwargs
        self._engines: dict[str, AsyncEngine] = {}
        # Engines replaced by update(), disposed on close()
        self._retired: list[AsyncEngine] = []

    @property
    def names(self) -> frozenset[str]:
        return frozenset(self._urls)

    def update(self, urls: Mapping[str, str]) -> None:
        """Add or replace connection URLs; engines of changed URLs are recreated."""
        for db_name, url in urls.items():
            if self._urls.get(db_name) != url:
                self._urls[db_name] = url
                retired = self._engines.pop(db_name, None)
                if retired is not None:
                    self._retired.append(retired)

    def engine(self, db_name: str) -> AsyncEngine:
        """Return the engine for ``db_name``, creating it on first use.

        Raises:
            KeyError: If no URL is configured for ``db_name``.
        """
        engine = self._engines.get(db_name)
        if engine is None:
            if db_name not in self._urls:
                raise KeyError(f"No connection URL configured for '{db_name}'")
            engine = create_async_engine_pooled(
                self._urls[db_name], **self._engine_kwargs
            )
            self._engines[db_name] = engine
            logger.debug("Created engine for %s", db_name)
        return engine

    async def close(self) -> None:
        """Dispose of every engine created so far."""
        engines = [*self._engines.values(), *self._retired]
        self._engines, self._retired = {}, []
        for engine in engines:
            await engine.dispose()
