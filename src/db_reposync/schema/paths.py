"""Mapping between schema objects and repository file paths.

Path format (relative to a database subtree, or with any leading prefix):

    <type>/<schema>/<name>.sql

The type segment is matched case-insensitively and written lower-case;
schema and name are kept verbatim.

Usage:
    from db_reposync.schema.paths import from_path, to_path

    obj = from_path("procedure/dbo/proc1.sql", "CREATE PROCEDURE proc1 ...")
    to_path(obj)  # 'procedure/dbo/proc1.sql'
"""

from db_reposync.schema.models import (
    SQL_FILE_EXTENSION,
    DbObject,
    DbObjectType,
    ObjectIdentity,
)


class InvalidPathError(ValueError):
    """Raised when a repository path does not name a schema object."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Invalid object path '{path}': {reason}")
        self.path = path
        self.reason = reason


def _split(path: str) -> tuple[str, str, str]:
    """Return the (type token, schema, name) components of ``path``."""
    if not path or not path.strip():
        raise InvalidPathError(path, "path is empty")

    if not path.endswith(SQL_FILE_EXTENSION):
        raise InvalidPathError(path, f"expected a '{SQL_FILE_EXTENSION}' file")

    segments = path.split("/")
    if len(segments) < 3:
        raise InvalidPathError(path, "expected <type>/<schema>/<name>.sql")

    type_token, schema, file_name = segments[-3:]
    name = file_name[: -len(SQL_FILE_EXTENSION)]

    if not type_token or not schema or not name:
        raise InvalidPathError(
            path,
            f"components cannot be empty (type='{type_token}', "
            f"schema='{schema}', name='{name}')",
        )

    return type_token, schema, name


def identity_from_path(path: str) -> ObjectIdentity:
    """Parse the object identity encoded in ``path``.

    Raises:
        InvalidPathError: If the suffix is missing, there are fewer than
            three segments, a component is empty, or the type is unknown.
    """
    type_token, schema, name = _split(path)
    try:
        object_type = DbObjectType.from_token(type_token)
    except ValueError:
        raise InvalidPathError(
            path, f"unknown object type '{type_token}'"
        ) from None
    return ObjectIdentity(schema, name, object_type)


def from_path(path: str, definition: str) -> DbObject:
    """Build a ``DbObject`` from a repository path and its file content.

    Only the last three segments are significant, so both subtree-relative
    paths and full repository paths are accepted.

    Examples:
        >>> obj = from_path("VIEW/dbo/view1.sql", "CREATE VIEW view1 AS SELECT 1")
        >>> (obj.schema, obj.name, obj.type)
        ('dbo', 'view1', <DbObjectType.VIEW: 'view'>)

        >>> from_path("view/dbo/view1.txt", "")
        Traceback (most recent call last):
        ...
        db_reposync.schema.paths.InvalidPathError: Invalid object path 'view/dbo/view1.txt': expected a '.sql' file
    """
    ident = identity_from_path(path)
    return DbObject(
        schema=ident.schema,
        name=ident.name,
        type=ident.type,
        definition=definition,
    )


def to_path(obj: DbObject | ObjectIdentity) -> str:
    """Build the subtree-relative path for an object or identity."""
    ident = obj.identity if isinstance(obj, DbObject) else obj
    return ident.path


def canonical_path(path: str) -> str:
    """Canonical form of a valid path: last three segments, type lower-cased."""
    return identity_from_path(path).path
