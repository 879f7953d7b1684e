"""Configuration loading from reposync.toml."""

import logging
import os
import tomllib
from pathlib import Path

from pydantic import ValidationError

from db_reposync.config.models import (
    DatabaseProfile,
    RepositoryConfig,
    ReposyncConfig,
    SyncConfig,
)

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DB_REPOSYNC_CONFIG"
DEFAULT_CONFIG_FILE = "reposync.toml"


def default_config_path() -> Path:
    """Config path from ``DB_REPOSYNC_CONFIG``, else ``./reposync.toml``."""
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return Path.cwd() / DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> ReposyncConfig:
    """Load reposync configuration from a TOML file.

    Args:
        config_path: Path to reposync.toml (default: ``DB_REPOSYNC_CONFIG``
            env var, else ``reposync.toml`` in the working directory).

    Returns:
        ReposyncConfig with all databases, repository and sync settings.

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config format is invalid
    """
    if config_path is None:
        config_path = default_config_path()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Reposync config not found: {config_path}\n"
            f"Create {DEFAULT_CONFIG_FILE} or set {CONFIG_ENV_VAR}."
        )

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid TOML in {config_path}: {e}") from e

    if "repository" not in data:
        raise ValueError(f"Missing [repository] section in {config_path}")

    try:
        # Parse databases
        databases = {}
        for name, profile_data in data.get("databases", {}).items():
            databases[name] = DatabaseProfile(**profile_data)

        config = ReposyncConfig(
            databases=databases,
            repository=RepositoryConfig(**data["repository"]),
            sync=SyncConfig(**data.get("sync", {})),
        )
    except ValidationError as e:
        raise ValueError(f"Invalid configuration in {config_path}: {e}") from e

    logger.debug(
        "Loaded config from %s (%d databases)", config_path, len(config.databases)
    )
    return config
