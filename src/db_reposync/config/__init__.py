"""Configuration management: TOML loading and config models.

Usage:
    >>> from db_reposync.config import load_config, ReposyncConfig, SyncSettings
"""

from db_reposync.config.loader import load_config
from db_reposync.config.models import (
    DatabaseProfile,
    RepositoryConfig,
    ReposyncConfig,
    SyncConfig,
    SyncSettings,
)

__all__ = [
    "load_config",
    "DatabaseProfile",
    "RepositoryConfig",
    "ReposyncConfig",
    "SyncConfig",
    "SyncSettings",
]
