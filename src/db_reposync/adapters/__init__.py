"""Collaborator protocols and their SQL Server and git implementations.

Usage:
    from db_reposync.adapters import DatabaseIntrospector, GitRepositoryStore
"""

from db_reposync.adapters.base import DatabaseIntrospector, ObjectApplier, RepositoryStore
from db_reposync.adapters.git import GitCommandError, GitRepositoryStore
from db_reposync.adapters.mssql import EngineRouter, create_async_engine_pooled

__all__ = [
    "DatabaseIntrospector",
    "ObjectApplier",
    "RepositoryStore",
    "GitRepositoryStore",
    "GitCommandError",
    "EngineRouter",
    "create_async_engine_pooled",
]
