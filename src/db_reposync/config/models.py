"""Pydantic models for reposync configuration."""

from pydantic import BaseModel, Field


# ============================================================================
# Configuration Models
# ============================================================================


class DatabaseProfile(BaseModel):
    """One onboardable database from ``[databases.<name>]``."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution


class RepositoryConfig(BaseModel):
    """Git repository holding the schema files, from ``[repository]``."""

    path: str
    branch: str = "main"
    root_path: str = ""  # Subtree of a database: <root_path>/<db_name>
    remote: str = ""  # Push after every ref move when set
    author_name: str = "Schema Sync"
    author_email: str = "schema-sync@localhost"
    ignore_file: str = ""  # Repository path of a sync-ignore file

    @property
    def author(self) -> str:
        return f"{self.author_name} <{self.author_email}>"


class SyncConfig(BaseModel):
    """Reconciliation options, from ``[sync]``."""

    owned_prefixes: list[str] = Field(default_factory=list)
    default_schema: str = "dbo"


class ReposyncConfig(BaseModel):
    """Complete configuration from reposync.toml."""

    databases: dict[str, DatabaseProfile]
    repository: RepositoryConfig
    sync: SyncConfig = Field(default_factory=SyncConfig)


# ============================================================================
# Orchestrator Settings
# ============================================================================


class SyncSettings(BaseModel):
    """Everything the sync orchestrator needs besides its collaborators.

    Example:
        >>> settings = SyncSettings(root_path="databases", owned_prefixes=["app_"])
        >>> settings.subtree("db1")
        'databases/db1'
    """

    owned_prefixes: list[str] = Field(default_factory=list)
    default_schema: str = "dbo"
    root_path: str = ""
    branch: str = "main"
    author: str = "Schema Sync <schema-sync@localhost>"
    ignore_file: str = ""

    @classmethod
    def from_config(cls, config: ReposyncConfig) -> "SyncSettings":
        return cls(
            owned_prefixes=config.sync.owned_prefixes,
            default_schema=config.sync.default_schema,
            root_path=config.repository.root_path,
            branch=config.repository.branch,
            author=config.repository.author,
            ignore_file=config.repository.ignore_file,
        )

    def subtree(self, db_name: str) -> str:
        """Repository directory holding the files of ``db_name``."""
        root = self.root_path.strip("/")
        return f"{root}/{db_name}" if root else db_name
