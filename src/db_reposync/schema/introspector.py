"""SQL Server schema introspection and object application.

Reads schema objects from the SQL Server catalog views and renders each as a
``CREATE`` script:

- Procedures, functions, views, triggers: ``sys.sql_modules`` text, preceded
  by the ``SET ANSI_NULLS`` / ``SET QUOTED_IDENTIFIER`` options they were
  created with
- Tables: columns, identity and primary key from ``sys.columns`` /
  ``sys.key_constraints``
- Types: alias types (``CREATE TYPE ... FROM``) and table types
  (``CREATE TYPE ... AS TABLE``)
- Synonyms and sequences from ``sys.synonyms`` / ``sys.sequences``

Writes go through ``SqlServerApplier`` inside one transaction: each object is
dropped with ``DROP <type> IF EXISTS`` and recreated from the ``GO``-separated
batches of its definition.

Uses SQLAlchemy's async engine (``mssql+aioodbc``).

Usage:
    from db_reposync.adapters.mssql import EngineRouter
    from db_reposync.schema.introspector import SqlServerIntrospector

    introspector = SqlServerIntrospector(EngineRouter(urls))
    objects = await introspector.list_objects("db1")

    async with introspector.transaction("db1") as applier:
        await applier.apply_object(objects[0])
"""

import logging
import re
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from itertools import groupby
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from db_reposync.adapters.mssql import EngineRouter
from db_reposync.schema.models import DbObject, DbObjectType, ObjectIdentity
from db_reposync.schema.normalize import DEFAULT_SCHEMA

logger = logging.getLogger(__name__)

CRLF = "\r\n"
INDENT = "    "

_GO_LINE = re.compile(r"^\s*GO\s*;?\s*$", re.IGNORECASE | re.MULTILINE)


# ============================================================================
# Catalog queries
# ============================================================================

MODULES_QUERY = """
    SELECT
        s.name AS schema_name,
        o.name AS name,
        CASE
            WHEN o.type = 'V' THEN 'view'
            WHEN o.type IN ('FN', 'IF', 'TF', 'FS', 'FT') THEN 'function'
            WHEN o.type = 'P' THEN 'procedure'
            WHEN o.type = 'TR' THEN 'trigger'
        END AS object_type,
        m.uses_ansi_nulls,
        m.uses_quoted_identifier,
        m.definition
    FROM sys.objects o
    JOIN sys.schemas s ON o.schema_id = s.schema_id
    JOIN sys.sql_modules m ON o.object_id = m.object_id
    WHERE o.type IN ('P', 'FN', 'IF', 'TF', 'FS', 'FT', 'V', 'TR')
        AND o.is_ms_shipped = 0
        AND s.name != 'sys'
    ORDER BY s.name, o.type, o.name
"""

TABLE_COLUMNS_QUERY = """
    SELECT
        s.name AS schema_name,
        t.name AS table_name,
        c.column_id,
        c.name AS column_name,
        TYPE_NAME(c.user_type_id) AS data_type,
        c.max_length,
        c.precision,
        c.scale,
        c.is_nullable,
        c.is_identity,
        CAST(ic.seed_value AS bigint) AS identity_seed,
        CAST(ic.increment_value AS bigint) AS identity_increment
    FROM sys.tables t
    JOIN sys.schemas s ON t.schema_id = s.schema_id
    JOIN sys.columns c ON c.object_id = t.object_id
    LEFT JOIN sys.identity_columns ic
        ON c.object_id = ic.object_id AND c.column_id = ic.column_id
    WHERE t.is_ms_shipped = 0
    ORDER BY s.name, t.name, c.column_id
"""

PRIMARY_KEYS_QUERY = """
    SELECT
        s.name AS schema_name,
        t.name AS table_name,
        kc.name AS constraint_name,
        c.name AS column_name
    FROM sys.key_constraints kc
    JOIN sys.index_columns ic
        ON kc.parent_object_id = ic.object_id AND kc.unique_index_id = ic.index_id
    JOIN sys.columns c
        ON ic.object_id = c.object_id AND ic.column_id = c.column_id
    JOIN sys.tables t ON kc.parent_object_id = t.object_id
    JOIN sys.schemas s ON t.schema_id = s.schema_id
    WHERE kc.type = 'PK' AND t.is_ms_shipped = 0
    ORDER BY s.name, t.name, ic.key_ordinal
"""

TABLE_TYPE_COLUMNS_QUERY = """
    SELECT
        s.name AS schema_name,
        tt.name AS type_name,
        c.column_id,
        c.name AS column_name,
        TYPE_NAME(c.user_type_id) AS data_type,
        c.max_length,
        c.precision,
        c.scale,
        c.is_nullable
    FROM sys.table_types tt
    JOIN sys.schemas s ON tt.schema_id = s.schema_id
    JOIN sys.columns c ON c.object_id = tt.type_table_object_id
    ORDER BY s.name, tt.name, c.column_id
"""

SCALAR_TYPES_QUERY = """
    SELECT
        s.name AS schema_name,
        t.name AS type_name,
        TYPE_NAME(t.system_type_id) AS base_type,
        t.max_length,
        t.precision,
        t.scale,
        t.is_nullable
    FROM sys.types t
    JOIN sys.schemas s ON t.schema_id = s.schema_id
    WHERE t.is_user_defined = 1 AND t.is_table_type = 0
    ORDER BY s.name, t.name
"""

SYNONYMS_QUERY = """
    SELECT
        s.name AS schema_name,
        sn.name AS name,
        sn.base_object_name
    FROM sys.synonyms sn
    JOIN sys.schemas s ON sn.schema_id = s.schema_id
    ORDER BY s.name, sn.name
"""

SEQUENCES_QUERY = """
    SELECT
        s.name AS schema_name,
        sq.name AS name,
        TYPE_NAME(sq.user_type_id) AS data_type,
        CAST(sq.start_value AS bigint) AS start_value,
        CAST(sq.increment AS bigint) AS increment,
        CAST(sq.minimum_value AS bigint) AS minimum_value,
        CAST(sq.maximum_value AS bigint) AS maximum_value,
        sq.is_cycling,
        sq.is_cached,
        sq.cache_size
    FROM sys.sequences sq
    JOIN sys.schemas s ON sq.schema_id = s.schema_id
    ORDER BY s.name, sq.name
"""


# ============================================================================
# Script builders
# ============================================================================


def quote_name(schema: str, name: str) -> str:
    """``[schema].[name]`` with closing brackets escaped."""
    return f"[{schema.replace(']', ']]')}].[{name.replace(']', ']]')}]"


def format_data_type(
    data_type: str,
    max_length: int,
    precision: int,
    scale: int,
) -> str:
    """Render a column or alias type with its length, precision, or scale.

    ``max_length`` is in bytes as reported by the catalog, so Unicode types
    are halved; ``-1`` means ``MAX``.

    Examples:
        >>> format_data_type("nvarchar", 200, 0, 0)
        'nvarchar(100)'
        >>> format_data_type("varchar", -1, 0, 0)
        'varchar(MAX)'
        >>> format_data_type("decimal", 9, 10, 2)
        'decimal(10, 2)'
        >>> format_data_type("datetime2", 8, 27, 7)
        'datetime2(7)'
        >>> format_data_type("int", 4, 10, 0)
        'int'
    """
    kind = data_type.lower()
    if kind in ("varchar", "char", "varbinary", "binary"):
        return f"{data_type}({'MAX' if max_length == -1 else max_length})"
    if kind in ("nvarchar", "nchar"):
        return f"{data_type}({'MAX' if max_length == -1 else max_length // 2})"
    if kind in ("decimal", "numeric"):
        return f"{data_type}({precision}, {scale})"
    if kind in ("datetime2", "time", "datetimeoffset"):
        return f"{data_type}({scale})" if scale > 0 else data_type
    return data_type


def _nullability(is_nullable: bool) -> str:
    return "NULL" if is_nullable else "NOT NULL"


def _column_line(column: Mapping[str, Any]) -> str:
    data_type = format_data_type(
        column["data_type"],
        column["max_length"],
        column["precision"],
        column["scale"],
    )
    identity = ""
    if column.get("is_identity"):
        seed = column.get("identity_seed") or 1
        increment = column.get("identity_increment") or 1
        identity = f" IDENTITY({seed},{increment})"
    return (
        f"{INDENT}[{column['column_name']}] {data_type}{identity} "
        f"{_nullability(column['is_nullable'])}"
    )


def module_script(
    definition: str,
    uses_ansi_nulls: bool,
    uses_quoted_identifier: bool,
) -> str:
    """Wrap a module body with the session options it was created under."""
    ansi_nulls = "ON" if uses_ansi_nulls else "OFF"
    quoted_identifier = "ON" if uses_quoted_identifier else "OFF"
    return (
        f"SET ANSI_NULLS {ansi_nulls};{CRLF}GO{CRLF}"
        f"SET QUOTED_IDENTIFIER {quoted_identifier};{CRLF}GO{CRLF}"
        f"{definition}{CRLF}GO"
    )


def table_script(
    schema: str,
    name: str,
    columns: list[Mapping[str, Any]],
    primary_key: str | None = None,
    primary_key_columns: list[str] | None = None,
) -> str:
    """``CREATE TABLE`` script from catalog column rows.

    Example:
        >>> print(table_script("dbo", "users", [
        ...     {"column_name": "id", "data_type": "int", "max_length": 4,
        ...      "precision": 10, "scale": 0, "is_nullable": False,
        ...      "is_identity": True, "identity_seed": 1, "identity_increment": 1},
        ... ], "PK_users", ["id"]))
        CREATE TABLE [dbo].[users]
        (
            [id] int IDENTITY(1,1) NOT NULL,
            CONSTRAINT [PK_users] PRIMARY KEY ([id])
        );
        GO
    """
    lines = [_column_line(column) for column in columns]
    if primary_key and primary_key_columns:
        key_columns = ", ".join(f"[{col}]" for col in primary_key_columns)
        lines.append(f"{INDENT}CONSTRAINT [{primary_key}] PRIMARY KEY ({key_columns})")
    body = ",\n".join(lines)
    return f"CREATE TABLE {quote_name(schema, name)}\n(\n{body}\n);\nGO"


def table_type_script(schema: str, name: str, columns: list[Mapping[str, Any]]) -> str:
    """``CREATE TYPE ... AS TABLE`` script from catalog column rows."""
    body = ",\n".join(_column_line(column) for column in columns)
    return f"CREATE TYPE {quote_name(schema, name)} AS TABLE\n(\n{body}\n);\nGO"


def scalar_type_script(
    schema: str,
    name: str,
    base_type: str,
    max_length: int,
    precision: int,
    scale: int,
    is_nullable: bool,
) -> str:
    """``CREATE TYPE ... FROM`` script for an alias type.

    Example:
        >>> scalar_type_script("dbo", "phonenumber", "varchar", 20, 0, 0, False)
        'CREATE TYPE [dbo].[phonenumber]\\n    FROM varchar(20) NOT NULL;\\nGO'
    """
    data_type = format_data_type(base_type, max_length, precision, scale)
    return (
        f"CREATE TYPE {quote_name(schema, name)}\n"
        f"{INDENT}FROM {data_type} {_nullability(is_nullable)};\nGO"
    )


def synonym_script(schema: str, name: str, base_object_name: str) -> str:
    return f"CREATE SYNONYM {quote_name(schema, name)} FOR {base_object_name};\nGO"


def sequence_script(
    schema: str,
    name: str,
    data_type: str,
    start_value: int,
    increment: int,
    minimum_value: int,
    maximum_value: int,
    is_cycling: bool,
    is_cached: bool,
    cache_size: int | None,
) -> str:
    """``CREATE SEQUENCE`` script with every option spelled out."""
    if not is_cached:
        cache = "NO CACHE"
    elif cache_size:
        cache = f"CACHE {cache_size}"
    else:
        cache = "CACHE"
    options = [
        f"AS {data_type}",
        f"START WITH {start_value}",
        f"INCREMENT BY {increment}",
        f"MINVALUE {minimum_value}",
        f"MAXVALUE {maximum_value}",
        "CYCLE" if is_cycling else "NO CYCLE",
        f"{cache};",
    ]
    lines = [f"CREATE SEQUENCE {quote_name(schema, name)}"]
    lines += [f"{INDENT}{option}" for option in options]
    return "\n".join(lines) + "\nGO"


def drop_statement(identity: ObjectIdentity) -> str:
    """``DROP <TYPE> IF EXISTS [schema].[name]``."""
    keyword = identity.type.value.upper()
    return f"DROP {keyword} IF EXISTS {quote_name(identity.schema, identity.name)}"


def create_schema_statement(schema: str) -> str:
    """Statement that creates ``schema`` unless it already exists."""
    literal = schema.replace("'", "''")
    bracketed = schema.replace("]", "]]").replace("'", "''")
    return (
        f"IF NOT EXISTS (SELECT * FROM sys.schemas WHERE name = '{literal}') "
        f"EXEC('CREATE SCHEMA [{bracketed}]')"
    )


def split_batches(script: str) -> list[str]:
    """Split a script on ``GO`` separator lines, dropping empty batches.

    Example:
        >>> split_batches("SET ANSI_NULLS ON;\\nGO\\nCREATE VIEW v AS SELECT 1\\nGO")
        ['SET ANSI_NULLS ON;', 'CREATE VIEW v AS SELECT 1']
    """
    return [batch.strip() for batch in _GO_LINE.split(script) if batch.strip()]


# ============================================================================
# Applier
# ============================================================================


class SqlServerApplier:
    """Replaces and drops objects on one open connection/transaction.

    Schemas other than the default are created on first use.
    """

    def __init__(self, conn: AsyncConnection, default_schema: str = DEFAULT_SCHEMA) -> None:
        self._conn = conn
        self._default_schema = default_schema
        self._ensured_schemas: set[str] = set()

    async def _execute(self, sql: str) -> None:
        # Driver-level execution: definitions may contain ':' or '%'
        await self._conn.exec_driver_sql(sql)

    async def _exists(self, identity: ObjectIdentity) -> bool:
        lookup = "TYPE_ID" if identity.type is DbObjectType.TYPE else "OBJECT_ID"
        result = await self._conn.execute(
            text(f"SELECT {lookup}(:qualified_name)"),
            {"qualified_name": quote_name(identity.schema, identity.name)},
        )
        return result.scalar() is not None

    async def _ensure_schema(self, schema: str) -> None:
        if schema.lower() == self._default_schema.lower():
            return
        if schema in self._ensured_schemas:
            return
        await self._execute(create_schema_statement(schema))
        self._ensured_schemas.add(schema)

    async def apply_object(self, obj: DbObject) -> bool:
        identity = obj.identity
        await self._ensure_schema(identity.schema)

        existed = await self._exists(identity)
        await self._execute(drop_statement(identity))
        for batch in split_batches(obj.definition):
            await self._execute(batch)

        logger.debug("%s %s", "Replaced" if existed else "Created", identity)
        return existed

    async def drop_object(self, identity: ObjectIdentity) -> None:
        await self._execute(drop_statement(identity))
        logger.debug("Dropped %s", identity)


# ============================================================================
# Introspector
# ============================================================================


class SqlServerIntrospector:
    """Reads and writes schema objects through per-database async engines.

    Args:
        engines: Router that hands out the engine of a database name.
        default_schema: Schema that is never created by the applier.
    """

    def __init__(self, engines: EngineRouter, default_schema: str = DEFAULT_SCHEMA) -> None:
        self.engines = engines
        self._default_schema = default_schema

    async def _fetch(self, conn: AsyncConnection, query: str) -> list[Mapping[str, Any]]:
        result = await conn.execute(text(query))
        return list(result.mappings().all())

    async def list_objects(self, db_name: str) -> list[DbObject]:
        engine = self.engines.engine(db_name)
        async with engine.connect() as conn:
            modules = await self._fetch(conn, MODULES_QUERY)
            table_columns = await self._fetch(conn, TABLE_COLUMNS_QUERY)
            primary_keys = await self._fetch(conn, PRIMARY_KEYS_QUERY)
            table_type_columns = await self._fetch(conn, TABLE_TYPE_COLUMNS_QUERY)
            scalar_types = await self._fetch(conn, SCALAR_TYPES_QUERY)
            synonyms = await self._fetch(conn, SYNONYMS_QUERY)
            sequences = await self._fetch(conn, SEQUENCES_QUERY)

        objects: list[DbObject] = []
        objects += _modules(modules)
        objects += _tables(table_columns, primary_keys)
        objects += _table_types(table_type_columns)
        objects += [
            DbObject(
                row["schema_name"],
                row["type_name"],
                DbObjectType.TYPE,
                scalar_type_script(
                    row["schema_name"],
                    row["type_name"],
                    row["base_type"],
                    row["max_length"],
                    row["precision"],
                    row["scale"],
                    bool(row["is_nullable"]),
                ),
            )
            for row in scalar_types
        ]
        objects += [
            DbObject(
                row["schema_name"],
                row["name"],
                DbObjectType.SYNONYM,
                synonym_script(row["schema_name"], row["name"], row["base_object_name"]),
            )
            for row in synonyms
        ]
        objects += [
            DbObject(
                row["schema_name"],
                row["name"],
                DbObjectType.SEQUENCE,
                sequence_script(
                    row["schema_name"],
                    row["name"],
                    row["data_type"],
                    row["start_value"],
                    row["increment"],
                    row["minimum_value"],
                    row["maximum_value"],
                    bool(row["is_cycling"]),
                    bool(row["is_cached"]),
                    row["cache_size"],
                ),
            )
            for row in sequences
        ]

        logger.debug("Read %d objects from %s", len(objects), db_name)
        return objects

    @asynccontextmanager
    async def transaction(self, db_name: str) -> AsyncIterator[SqlServerApplier]:
        """Yield an applier bound to one transaction.

        Uses ``engine.begin()`` for automatic commit on success, rollback on
        error.
        """
        engine = self.engines.engine(db_name)
        async with engine.begin() as conn:
            yield SqlServerApplier(conn, self._default_schema)

    async def close(self) -> None:
        await self.engines.close()


def _modules(rows: list[Mapping[str, Any]]) -> list[DbObject]:
    return [
        DbObject(
            row["schema_name"],
            row["name"],
            DbObjectType(row["object_type"]),
            module_script(
                row["definition"],
                bool(row["uses_ansi_nulls"]),
                bool(row["uses_quoted_identifier"]),
            ),
        )
        for row in rows
        if row["definition"] is not None
    ]


def _group(rows: list[Mapping[str, Any]], name_key: str):
    return groupby(rows, key=lambda row: (row["schema_name"], row[name_key]))


def _tables(
    column_rows: list[Mapping[str, Any]],
    key_rows: list[Mapping[str, Any]],
) -> list[DbObject]:
    keys: dict[tuple[str, str], tuple[str, list[str]]] = {}
    for (schema, table), rows in _group(key_rows, "table_name"):
        rows = list(rows)
        keys[(schema, table)] = (
            rows[0]["constraint_name"],
            [row["column_name"] for row in rows],
        )

    objects = []
    for (schema, table), rows in _group(column_rows, "table_name"):
        key_name, key_columns = keys.get((schema, table), (None, None))
        objects.append(
            DbObject(
                schema,
                table,
                DbObjectType.TABLE,
                table_script(schema, table, list(rows), key_name, key_columns),
            )
        )
    return objects


def _table_types(column_rows: list[Mapping[str, Any]]) -> list[DbObject]:
    return [
        DbObject(
            schema,
            type_name,
            DbObjectType.TYPE,
            table_type_script(schema, type_name, list(rows)),
        )
        for (schema, type_name), rows in _group(column_rows, "type_name")
    ]
