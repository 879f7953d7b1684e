"""Normalization of SQL definitions for equivalence checks.

Two definitions are treated as the same object when their normalized forms
are equal. Normalization is pure and deterministic, and it is applied the
same way to the database side and the repository side:

1. Split batches on ``GO`` lines (outside comments and string literals)
2. Remove ``--`` and ``/* */`` comments
3. Lower-case everything except string literals, which stay verbatim
4. Collapse runs of whitespace into one space
5. Drop statement-terminating semicolons
6. Keep only the batches that contain ``create``
   (drops ``SET ANSI_NULLS`` / ``SET QUOTED_IDENTIFIER`` preambles)
7. Fold ``create or alter`` into ``create``
8. Unquote bracketed identifiers: ``[name]`` -> ``name``
9. Strip the default schema qualifier: ``dbo.name`` -> ``name``
10. Normalize ``DEFAULT ((0))`` / ``DEFAULT (0)`` to ``DEFAULT 0``
11. Drop redundant parentheses in stored predicates:
    ``where ([a]>=(0))`` -> ``where a >= 0``
12. Normalize spacing around comparison operators
13. Drop the default ``NONCLUSTERED`` index keyword
14. Normalize numeric type arguments: ``decimal (5, 2)`` -> ``decimal(5,2)``
15. Sort ``CREATE TABLE`` columns by name (table constraints keep their
    order, after the columns)
16. Sort ``CREATE INDEX`` statements by index name

Usage:
    from db_reposync.schema.normalize import definitions_equal

    definitions_equal("CREATE VIEW v AS SELECT 1", "create   view [v] as select 1;")
    # True
"""

import re
from functools import lru_cache

DEFAULT_SCHEMA = "dbo"

_GO_LINE = re.compile(r"[ \t]*go[ \t]*;?[ \t]*(?:\r?\n|\Z)", re.IGNORECASE)
_PLACEHOLDER = re.compile("\x00(\\d+)\x00")
_CREATE = re.compile(r"\bcreate\b")
_CREATE_OR_ALTER = re.compile(r"\bcreate\s+or\s+alter\b")
_BRACKETED = re.compile(r"\[(\w+)\]")
_DEFAULT_PARENS = re.compile(r"(\bdefault\s+)\(\((\d+)\)\)")
_DEFAULT_PAREN = re.compile(r"(\bdefault\s+)\((\d+)\)")
_DEFAULT_FUNC = re.compile(
    r"(\bdefault\s+)\((getdate|sysdatetime|current_timestamp)\(\)\)"
)
_PAREN_COMPARISON = re.compile(r"(?<!\w)\((\w+)\)\s*([=><]+)\s*\((\d+)\)")
_COMPARED_NUMBER = re.compile(r"([=><]+)\s*\((\d+)\)")
_DOUBLE_PARENS = re.compile(r"\(\(([^()]*)\)\)")
_WHERE_PARENS = re.compile(
    r"\bwhere\s+\(([^()]+)\)"
    r"(?=\s*$|\s*\)|\s+(?:group|order|having|union|except|intersect|option)\b)"
)
_OPERATOR = re.compile(r"\s*([<>=!]+)\s*")
_NONCLUSTERED_INDEX = re.compile(r"\bcreate\s+(unique\s+)?nonclustered\s+index\b")
_SPACE_BEFORE_PAREN = re.compile(r"(\w)\s+\(")
_TWO_ARGS = re.compile(r"\(\s*(\d+)\s*,\s*(\d+)\s*\)")
_ONE_ARG = re.compile(r"\(\s*(\d+)\s*\)")
_INDEX_START = re.compile(r"(?=\bcreate (?:unique )?(?:clustered )?index\b)")
_INDEX_NAME = re.compile(r"\bindex (\S+)")
_TABLE_CONSTRAINT = (
    "constraint ", "primary key", "unique ", "unique(", "foreign key", "check(", "index ",
)
_WHITESPACE = re.compile(r"\s+")


def _literal_end(sql: str, start: int) -> int:
    """Index just past the string literal opening at ``start``."""
    i = start + 1
    while True:
        close = sql.find("'", i)
        if close == -1:
            return len(sql)
        if sql.startswith("''", close):
            i = close + 2
            continue
        return close + 1


def _scan(sql: str, literals: list[str]) -> list[str]:
    """Steps 1-5: split batches, remove comments, fold case, whitespace and ``;``.

    String literals are moved verbatim into ``literals`` and replaced by
    numbered placeholders so no later step rewrites their contents.
    """
    batches: list[str] = []
    out: list[str] = []
    i = 0
    length = len(sql)
    pending_space = False
    line_start = True

    while i < length:
        if line_start:
            line_start = False
            go = _GO_LINE.match(sql, i)
            if go:
                batches.append("".join(out).strip())
                out = []
                pending_space = False
                line_start = True
                i = go.end()
                continue

        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < length else ""

        if ch == "-" and nxt == "-":
            end = sql.find("\n", i)
            i = length if end == -1 else end
            pending_space = True
            continue

        if ch == "/" and nxt == "*":
            end = sql.find("*/", i + 2)
            i = length if end == -1 else end + 2
            pending_space = True
            continue

        if ch.isspace():
            pending_space = True
            line_start = ch == "\n"
            i += 1
            continue

        if ch == ";":
            i += 1
            continue

        if pending_space and out:
            out.append(" ")
        pending_space = False

        if ch == "'":
            end = _literal_end(sql, i)
            out.append(f"\x00{len(literals)}\x00")
            literals.append(sql[i:end])
            i = end
            continue

        out.append(ch.lower())
        i += 1

    batches.append("".join(out).strip())
    return batches


def _create_batches(batches: list[str]) -> str:
    """Step 6: keep the batches that create something."""
    batches = [batch for batch in batches if batch]
    creating = [batch for batch in batches if _CREATE.search(batch)]
    return " ".join(creating or batches)


def _normalize_parentheses(text: str) -> str:
    """Step 11: parentheses SQL Server adds to stored predicates."""
    text = _PAREN_COMPARISON.sub(r"\1 \2 \3", text)
    text = _COMPARED_NUMBER.sub(r"\1 \2", text)
    text = _DOUBLE_PARENS.sub(r"(\1)", text)
    return _WHERE_PARENS.sub(r"where \1", text)


def _matching_paren(text: str, open_index: int) -> int:
    depth = 0
    for i in range(open_index, len(text)):
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            depth -= 1
            if depth == 0:
                return i
    return -1


def _split_top_level(section: str) -> list[str]:
    """Split on commas that are not nested inside parentheses."""
    items: list[str] = []
    depth = 0
    last = 0
    for i, ch in enumerate(section):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            items.append(section[last:i].strip())
            last = i + 1
    items.append(section[last:].strip())
    return [item for item in items if item]


def _sort_table_columns(text: str) -> str:
    """Step 15: column order inside ``CREATE TABLE`` is insignificant."""
    start = text.find("create table")
    if start == -1:
        return text
    open_paren = text.find("(", start)
    if open_paren == -1:
        return text
    close_paren = _matching_paren(text, open_paren)
    if close_paren == -1:
        return text

    items = _split_top_level(text[open_paren + 1 : close_paren])
    constraints = [item for item in items if item.startswith(_TABLE_CONSTRAINT)]
    columns = [item for item in items if not item.startswith(_TABLE_CONSTRAINT)]
    columns.sort(key=lambda item: item.split(" ", 1)[0])

    body = ", ".join(columns + constraints)
    return f"{text[:open_paren + 1]}{body}{text[close_paren:]}"


def _sort_index_statements(text: str) -> str:
    """Step 16: the order of ``CREATE INDEX`` statements is insignificant."""
    parts = [part.strip() for part in _INDEX_START.split(text)]
    if len(parts) <= 2:
        return text

    def index_name(statement: str) -> str:
        match = _INDEX_NAME.search(statement)
        return match.group(1) if match else statement

    head, indexes = parts[0], sorted(parts[1:], key=index_name)
    return " ".join(part for part in [head, *indexes] if part)


@lru_cache(maxsize=4096)
def normalize_sql(sql: str, default_schema: str = DEFAULT_SCHEMA) -> str:
    """Return the normalized form of a SQL definition.

    Args:
        sql: Definition text as read from the database or a repository file.
        default_schema: Schema whose qualifier is insignificant.

    Returns:
        Normalized text. Equal outputs mean equivalent definitions.

    Example:
        >>> normalize_sql("SET ANSI_NULLS ON;\\nGO\\nCREATE VIEW [dbo].[v1] AS SELECT 1\\nGO")
        'create view v1 as select 1'
    """
    literals: list[str] = []
    text = _create_batches(_scan(sql, literals))
    text = _CREATE_OR_ALTER.sub("create", text)
    text = _BRACKETED.sub(r"\1", text)

    schema = default_schema.lower()
    text = re.sub(rf"\b{re.escape(schema)}\.", "", text)

    text = _DEFAULT_PARENS.sub(r"\1\2", text)
    text = _DEFAULT_PAREN.sub(r"\1\2", text)
    text = _DEFAULT_FUNC.sub(r"\1\2()", text)

    text = _normalize_parentheses(text)
    text = _OPERATOR.sub(r" \1 ", text)
    text = _NONCLUSTERED_INDEX.sub(r"create \1index", text)
    text = _SPACE_BEFORE_PAREN.sub(r"\1(", text)
    text = _TWO_ARGS.sub(r"(\1,\2)", text)
    text = _ONE_ARG.sub(r"(\1)", text)
    text = _WHITESPACE.sub(" ", text).strip()

    text = _sort_table_columns(text)
    text = _sort_index_statements(text)

    return _PLACEHOLDER.sub(lambda m: literals[int(m.group(1))], text)


def definitions_equal(
    a: str | None,
    b: str | None,
    default_schema: str = DEFAULT_SCHEMA,
) -> bool:
    """Check whether two definitions are equivalent.

    ``None`` stands for "object absent": two absents are equal, an absent
    object never equals a present one.
    """
    if a is None or b is None:
        return a is None and b is None
    if a == b:
        return True
    return normalize_sql(a, default_schema) == normalize_sql(b, default_schema)
