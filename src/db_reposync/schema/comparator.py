"""Reconciliation of database objects against a repository subtree.

Classifies every owned identity on either side and produces the plan that
makes the written side match. Pure logic -- no I/O, no database
connections, no repository access.

Usage:
    from db_reposync.schema.comparator import reconcile
    from db_reposync.schema.models import SyncDirection

    result = reconcile(
        db_objects,
        repo_objects,
        owned_prefixes={"prefix1_"},
        direction=SyncDirection.APPLY,
        baseline=baseline_objects,
    )
    if result.has_conflicts:
        print(result.format_report())
"""

import re
from collections.abc import Iterable
from functools import lru_cache

from db_reposync.schema.models import (
    DbObject,
    ObjectIdentity,
    ObjectStatus,
    PlanAction,
    PlanEntry,
    ReconciliationResult,
    RepoObject,
    SyncDirection,
)
from db_reposync.schema.normalize import DEFAULT_SCHEMA, definitions_equal
from db_reposync.schema.paths import identity_from_path


def is_owned(name: str, owned_prefixes: Iterable[str]) -> bool:
    """Check whether an object name falls under the owned prefixes.

    An empty prefix set owns every name.
    """
    prefixes = tuple(owned_prefixes)
    if not prefixes:
        return True
    return name.startswith(prefixes)


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    """Compile a sync-ignore glob.

    ``*`` and ``?`` stay inside one path segment, ``**`` crosses segments,
    ``[abc]`` / ``[!abc]`` match one character and ``{a,b}`` an alternative.
    """
    out: list[str] = []
    depth = 0
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
            continue
        end = pattern.find("]", i + 2) if ch == "[" else -1
        if end != -1:
            body = pattern[i + 1 : end]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append(f"[{body}]")
            i = end + 1
            continue

        if ch == "*":
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "{":
            out.append("(?:")
            depth += 1
        elif ch == "}" and depth:
            out.append(")")
            depth -= 1
        elif ch == "," and depth:
            out.append("|")
        else:
            out.append(re.escape(ch))
        i += 1
    out.append(")" * depth)
    return re.compile("".join(out))


def is_ignored(ident: ObjectIdentity, ignore_patterns: Iterable[str]) -> bool:
    """Check ``ident.path`` against glob patterns from a sync-ignore file."""
    path = ident.path
    return any(_glob_regex(pattern).fullmatch(path) for pattern in ignore_patterns)


def parse_ignore_patterns(content: str) -> tuple[str, ...]:
    """Glob patterns from a sync-ignore file: one per line, ``#`` comments.

    Example:
        >>> parse_ignore_patterns("# legacy\\nprocedure/dbo/old_*\\n\\n*/tmp/*\\n")
        ('procedure/dbo/old_*', '*/tmp/*')
    """
    patterns = []
    for line in content.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            patterns.append(line)
    return tuple(patterns)


def _index_db(objects: Iterable[DbObject]) -> dict[ObjectIdentity, str]:
    indexed: dict[ObjectIdentity, str] = {}
    for obj in objects:
        ident = obj.identity
        if ident in indexed:
            raise ValueError(f"Duplicate database object identity: {ident}")
        indexed[ident] = obj.definition
    return indexed


def _index_repo(objects: Iterable[RepoObject]) -> dict[ObjectIdentity, str]:
    indexed: dict[ObjectIdentity, str] = {}
    for obj in objects:
        ident = identity_from_path(obj.path)
        if ident in indexed:
            raise ValueError(
                f"Duplicate repository object identity: {ident} ({obj.path})"
            )
        indexed[ident] = obj.definition
    return indexed


def _owned(
    indexed: dict[ObjectIdentity, str],
    owned_prefixes: tuple[str, ...],
    ignore_patterns: tuple[str, ...],
) -> dict[ObjectIdentity, str]:
    return {
        ident: definition
        for ident, definition in indexed.items()
        if is_owned(ident.name, owned_prefixes)
        and not is_ignored(ident, ignore_patterns)
    }


def reconcile(
    db_objects: Iterable[DbObject],
    repo_objects: Iterable[RepoObject],
    owned_prefixes: Iterable[str],
    direction: SyncDirection,
    baseline: Iterable[RepoObject] | None = None,
    default_schema: str = DEFAULT_SCHEMA,
    ignore_patterns: Iterable[str] = (),
) -> ReconciliationResult:
    """Reconcile one database snapshot with its repository subtree.

    Steps:
    1. Filter the database, repository and baseline sides to owned objects
       (name starts with an owned prefix and the path is not ignored)
    2. Index each side by identity; duplicate identities are rejected
    3. Classify every identity in the union of database and repository

    Export (database -> repository; the database is authoritative):

    - only in the database: ``REMOVED_IN_REPO`` when the baseline has it,
      else ``ADDED_IN_DB``; planned as an upsert of the file
    - only in the repository: ``REMOVED_IN_DB`` when the baseline has it,
      else ``ADDED_IN_REPO``; planned as a delete of the file
    - in both with different definitions: ``ADDED_IN_DB``; upsert

    Apply (repository -> database), with *d* the live definition, *h* the
    repository head and *b* the baseline (absent counts as a value):

    - *d* equals *h*: ``IN_SYNC``
    - *d* equals *b*: the database has not drifted, so the repository change
      is applied. ``ADDED_IN_REPO`` (upsert) when *h* is present,
      ``REMOVED_IN_REPO`` (drop) when it is absent
    - otherwise: ``CONFLICTING``, listed in ``conflicts`` and left out of
      the plan

    Export plans are ordered by path, apply plans by the declared apply order,
    then schema, then name.

    Args:
        db_objects: Objects read from the live database.
        repo_objects: Objects in the database's subtree at the repository head.
            Paths may be relative to the subtree or carry a leading prefix.
        owned_prefixes: Name prefixes this sync manages. Empty owns everything.
        direction: Which side the plan writes to.
        baseline: Objects at the commit of the last successful sync. ``None``
            is treated as an empty baseline.
        default_schema: Schema qualifier ignored when comparing definitions.
        ignore_patterns: Glob patterns matched against object paths.

    Returns:
        ``ReconciliationResult`` with statuses, plan and conflicts.

    Raises:
        ValueError: If one side holds the same identity twice.
        InvalidPathError: If a repository path does not name an object.

    Examples:
        >>> from db_reposync.schema.models import DbObjectType
        >>> db = [DbObject("dbo", "p1_view", DbObjectType.VIEW, "CREATE VIEW p1_view AS SELECT 2")]
        >>> repo = [RepoObject("view/dbo/p1_view.sql", "CREATE VIEW p1_view AS SELECT 1")]
        >>> result = reconcile(db, repo, {"p1_"}, SyncDirection.EXPORT)
        >>> result.describe_plan()
        ['upsert view/dbo/p1_view.sql']

        >>> result = reconcile(db, repo, {"p1_"}, SyncDirection.APPLY, baseline=repo)
        >>> [str(ident) for ident in result.conflicts]
        ['view:dbo.p1_view']
    """
    prefixes = tuple(owned_prefixes)
    patterns = tuple(ignore_patterns)

    db_side = _owned(_index_db(db_objects), prefixes, patterns)
    repo_side = _owned(_index_repo(repo_objects), prefixes, patterns)
    base_side = _owned(_index_repo(baseline or ()), prefixes, patterns)

    result = ReconciliationResult(direction=direction)

    for ident in sorted(db_side.keys() | repo_side.keys(), key=lambda i: i.sort_key):
        live = db_side.get(ident)
        head = repo_side.get(ident)

        if definitions_equal(live, head, default_schema):
            result.statuses[ident] = ObjectStatus.IN_SYNC
            continue

        if direction is SyncDirection.EXPORT:
            _classify_export(result, ident, live, head, base_side)
        else:
            _classify_apply(result, ident, live, head, base_side, default_schema)

    if direction is SyncDirection.EXPORT:
        result.plan.sort(key=lambda entry: entry.path)
    else:
        result.plan.sort(key=lambda entry: entry.identity.sort_key)

    return result


def _classify_export(
    result: ReconciliationResult,
    ident: ObjectIdentity,
    live: str | None,
    head: str | None,
    base_side: dict[ObjectIdentity, str],
) -> None:
    if live is None:
        status = (
            ObjectStatus.REMOVED_IN_DB
            if ident in base_side
            else ObjectStatus.ADDED_IN_REPO
        )
        result.statuses[ident] = status
        result.plan.append(PlanEntry(ident, PlanAction.DELETE))
        return

    if head is None and ident in base_side:
        result.statuses[ident] = ObjectStatus.REMOVED_IN_REPO
    else:
        result.statuses[ident] = ObjectStatus.ADDED_IN_DB
    result.plan.append(PlanEntry(ident, PlanAction.UPSERT, live))


def _classify_apply(
    result: ReconciliationResult,
    ident: ObjectIdentity,
    live: str | None,
    head: str | None,
    base_side: dict[ObjectIdentity, str],
    default_schema: str,
) -> None:
    if not definitions_equal(live, base_side.get(ident), default_schema):
        result.statuses[ident] = ObjectStatus.CONFLICTING
        result.conflicts.append(ident)
        return

    if head is None:
        result.statuses[ident] = ObjectStatus.REMOVED_IN_REPO
        result.plan.append(PlanEntry(ident, PlanAction.DELETE))
    else:
        result.statuses[ident] = ObjectStatus.ADDED_IN_REPO
        result.plan.append(PlanEntry(ident, PlanAction.UPSERT, head))
