"""Tests for the sync orchestrator.

Runs both sync directions against in-memory collaborators: a fake
introspector whose transactions stage changes and only publish them on
success, and a fake repository store holding commits as path -> content
trees. Verifies dry runs, conflict blocking, apply order, rollback on
failure, marker movement, multi-database batches and the request boundary.
"""

import asyncio
from collections.abc import Iterable, Mapping
from contextlib import asynccontextmanager

import pytest
from sqlalchemy.exc import SQLAlchemyError

from db_reposync.adapters.git import GitCommandError
from db_reposync.config.models import SyncSettings
from db_reposync.context import (
    DatabaseContextRouter,
    DatabaseRegistry,
    UnknownDatabaseError,
    current_database,
)
from db_reposync.schema.models import (
    DbObject,
    DbObjectType,
    ObjectIdentity,
    ObjectStatus,
    RepoObject,
    SyncError,
    SyncStatus,
    SyncSummary,
)
from db_reposync.schema.sync import (
    DbNotOnboardedException,
    DbOutOfSyncException,
    SynchronizationException,
    SyncOrchestrator,
    request_sync_db_to_repo,
    request_sync_repo_to_db,
)

# ------------------------------------------------------------------
# Helper: in-memory collaborators
# ------------------------------------------------------------------


class FakeApplier:
    def __init__(self, owner: "FakeIntrospector", staged: dict[ObjectIdentity, DbObject]) -> None:
        self._owner = owner
        self._staged = staged

    async def apply_object(self, obj: DbObject) -> bool:
        self._owner.calls.append(("apply", obj.identity.path, current_database()))
        if obj.identity == self._owner.fail_on:
            raise SQLAlchemyError(f"cannot create {obj.identity}")
        existed = obj.identity in self._staged
        self._staged[obj.identity] = obj
        return existed

    async def drop_object(self, identity: ObjectIdentity) -> None:
        self._owner.calls.append(("drop", identity.path, current_database()))
        self._staged.pop(identity, None)


class FakeIntrospector:
    """Databases as identity -> object maps; transactions publish on success."""

    def __init__(self, databases: Mapping[str, Iterable[DbObject]]) -> None:
        self.databases = {
            name: {obj.identity: obj for obj in objects}
            for name, objects in databases.items()
        }
        self.calls: list[tuple[str, str, str]] = []
        self.transactions = 0
        self.fail_on: ObjectIdentity | None = None
        self.fail_on_commit = False
        self.listed_in: list[str] = []

    def objects(self, db_name: str) -> dict[str, str]:
        return {ident.path: obj.definition for ident, obj in self.databases[db_name].items()}

    async def list_objects(self, db_name: str) -> list[DbObject]:
        self.listed_in.append(current_database())
        return list(self.databases[db_name].values())

    @asynccontextmanager
    async def transaction(self, db_name: str):
        self.transactions += 1
        staged = dict(self.databases[db_name])
        yield FakeApplier(self, staged)
        if self.fail_on_commit:
            raise SQLAlchemyError("commit failed")
        self.databases[db_name] = staged

    async def close(self) -> None:
        pass


class FakeStore:
    """Commits as full path -> content trees; markers as name -> commit id."""

    def __init__(self, branch: str = "main") -> None:
        self.branch = branch
        self.trees: dict[str, dict[str, str]] = {}
        self.messages: dict[str, str] = {}
        self.branches: dict[str, str] = {}
        self.markers: dict[str, str] = {}

    def _tree(self, ref: str | None) -> dict[str, str] | None:
        commit_id = self.branches.get(ref or self.branch, ref)
        return self.trees.get(commit_id)

    def list_objects(self, prefix: str, ref: str | None = None) -> list[RepoObject]:
        tree = self._tree(ref) or {}
        prefix = prefix.strip("/") + "/"
        return [
            RepoObject(path[len(prefix):], content)
            for path, content in sorted(tree.items())
            if path.startswith(prefix) and path.endswith(".sql")
        ]

    def read_file(self, path: str, ref: str | None = None) -> str | None:
        return (self._tree(ref) or {}).get(path)

    def commit(self, writes, deletes, message, author, branch=None, markers=()) -> str:
        branch = branch or self.branch
        tree = dict(self.trees.get(self.branches.get(branch), {}))
        tree.update(writes)
        for path in deletes:
            tree.pop(path, None)
        commit_id = f"c{len(self.trees) + 1:039d}"
        self.trees[commit_id] = tree
        self.messages[commit_id] = message
        self.branches[branch] = commit_id
        for name in markers:
            self.markers[name] = commit_id
        return commit_id

    def head(self, branch: str | None = None) -> str | None:
        return self.branches.get(branch or self.branch)

    def marker(self, name: str) -> str | None:
        return self.markers.get(name)

    def resolve(self, ref: str) -> str | None:
        if ref in self.trees:
            return ref
        return self.branches.get(ref) or self.markers.get(ref)

    def set_markers(self, names: Iterable[str], commit_id: str) -> None:
        for name in names:
            self.markers[name] = commit_id

    def fetch(self) -> None:
        pass

    def files(self, commit_id: str | None = None) -> dict[str, str]:
        return dict(self._tree(commit_id) or {})


def _proc(name: str, body: str = "SELECT 1") -> DbObject:
    return DbObject("dbo", name, DbObjectType.PROCEDURE, f"CREATE PROCEDURE {name} AS {body}")


def _view(name: str, body: str = "SELECT 1") -> DbObject:
    return DbObject("dbo", name, DbObjectType.VIEW, f"CREATE VIEW {name} AS {body}")


def _seed(store: FakeStore, db_name: str, objects: Iterable[DbObject], onboard: bool = True) -> str:
    """Commit objects into the database's subtree, optionally setting its marker."""
    writes = {f"{db_name}/{obj.identity.path}": obj.definition for obj in objects}
    return store.commit(
        writes, [], "seed", "Test <t@example.com>", markers=[db_name] if onboard else []
    )


def _orchestrator(
    introspector: FakeIntrospector,
    store: FakeStore,
    names: Iterable[str] = ("db1",),
    **settings,
) -> SyncOrchestrator:
    router = DatabaseContextRouter(DatabaseRegistry(names))
    return SyncOrchestrator(router, introspector, store, SyncSettings(**settings))


# ------------------------------------------------------------------
# Database -> repository
# ------------------------------------------------------------------


class TestSyncDbToRepo:
    """Test sync_db_to_repo."""

    async def test_dry_run_leaves_repository_untouched(self) -> None:
        store = FakeStore()
        orchestrator = _orchestrator(FakeIntrospector({"db1": [_view("v1")]}), store)

        summary = await orchestrator.sync_db_to_repo("db1", dry_run=True)

        assert summary.dry_run
        assert summary.changes == ["upsert view/dbo/v1.sql"]
        assert summary.message == "Dry run: 1 change(s) detected"
        assert summary.commit_id is None
        assert store.trees == {}
        assert store.markers == {}

    async def test_commits_changes_and_moves_marker(self) -> None:
        store = FakeStore()
        view = _view("v1")
        orchestrator = _orchestrator(FakeIntrospector({"db1": [view]}), store)

        summary = await orchestrator.sync_db_to_repo("db1")

        assert summary.commit_id == store.head()
        assert store.marker("db1") == summary.commit_id
        assert store.files() == {"db1/view/dbo/v1.sql": view.definition}
        assert store.messages[summary.commit_id] == "Repo synced with DB: db1"
        assert summary.message == "Committed 1 change(s)"

    async def test_dropped_object_deleted_from_repository(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [_view("v1"), _view("old")])
        orchestrator = _orchestrator(FakeIntrospector({"db1": [_view("v1")]}), store)

        summary = await orchestrator.sync_db_to_repo("db1")

        assert summary.changes == ["delete view/dbo/old.sql"]
        assert "db1/view/dbo/old.sql" not in store.files()
        assert "delete view/dbo/old.sql" in summary.result_description

    async def test_only_own_subtree_written(self) -> None:
        store = FakeStore()
        _seed(store, "db2", [_view("v2")])
        orchestrator = _orchestrator(
            FakeIntrospector({"db1": [_view("v1")], "db2": []}), store, names=("db1", "db2")
        )

        await orchestrator.sync_db_to_repo("db1")

        assert store.files() == {
            "db1/view/dbo/v1.sql": _view("v1").definition,
            "db2/view/dbo/v2.sql": _view("v2").definition,
        }
        assert store.marker("db2") != store.marker("db1")

    async def test_no_changes_moves_marker_to_head(self) -> None:
        store = FakeStore()
        head = _seed(store, "db1", [_view("v1")], onboard=False)
        orchestrator = _orchestrator(FakeIntrospector({"db1": [_view("v1")]}), store)

        summary = await orchestrator.sync_db_to_repo("db1")

        assert summary.message == "No changes"
        assert summary.result_description == "In sync"
        assert store.head() == head
        assert store.marker("db1") == head

    async def test_owned_prefixes_limit_export(self) -> None:
        store = FakeStore()
        introspector = FakeIntrospector({"db1": [_proc("proc1"), _proc("prefix1_proc1")]})
        orchestrator = _orchestrator(introspector, store, owned_prefixes=["prefix1_"])

        summary = await orchestrator.sync_db_to_repo("db1")

        assert summary.changes == ["upsert procedure/dbo/prefix1_proc1.sql"]

    async def test_ignore_file_respected(self) -> None:
        store = FakeStore()
        store.commit({".syncignore": "procedure/dbo/tmp_*\n"}, [], "ignore", "T <t@x>")
        introspector = FakeIntrospector({"db1": [_proc("tmp_scratch"), _proc("p1")]})
        orchestrator = _orchestrator(introspector, store, ignore_file=".syncignore")

        summary = await orchestrator.sync_db_to_repo("db1", dry_run=True)

        assert summary.changes == ["upsert procedure/dbo/p1.sql"]

    async def test_root_path_prefixes_subtree(self) -> None:
        store = FakeStore()
        orchestrator = _orchestrator(
            FakeIntrospector({"db1": [_view("v1")]}), store, root_path="databases"
        )

        await orchestrator.sync_db_to_repo("db1")

        assert list(store.files()) == ["databases/db1/view/dbo/v1.sql"]

    async def test_database_bound_while_reading(self) -> None:
        introspector = FakeIntrospector({"db1": []})
        orchestrator = _orchestrator(introspector, FakeStore())

        await orchestrator.sync_db_to_repo("db1", dry_run=True)

        assert introspector.listed_in == ["db1"]

    async def test_unknown_database(self) -> None:
        orchestrator = _orchestrator(FakeIntrospector({}), FakeStore())
        with pytest.raises(UnknownDatabaseError):
            await orchestrator.sync_db_to_repo("db9")

    async def test_unknown_database_leaves_no_lock(self) -> None:
        orchestrator = _orchestrator(FakeIntrospector({"db1": []}), FakeStore())

        for name in ("db7", "db8", "db9"):
            outcome = await request_sync_db_to_repo(orchestrator, name)
            assert isinstance(outcome, SyncError)
        await orchestrator.sync_db_to_repo("db1", dry_run=True)

        assert set(orchestrator._locks) == {"db1"}

    @pytest.mark.parametrize(("names", "expected_peak"), [(["db1"] * 3, 1), (["db1", "db2"], 2)])
    async def test_same_database_serialized(self, names: list[str], expected_peak: int) -> None:
        """Syncs of one database never overlap; different databases do."""
        introspector = FakeIntrospector({"db1": [], "db2": []})
        read = introspector.list_objects
        active = peak = 0

        async def slow_list(db_name: str) -> list[DbObject]:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return await read(db_name)

        introspector.list_objects = slow_list
        orchestrator = _orchestrator(introspector, FakeStore(), names=("db1", "db2"))

        await asyncio.gather(*(orchestrator.sync_db_to_repo(name, dry_run=True) for name in names))

        assert peak == expected_peak

    async def test_git_failure_wrapped(self) -> None:
        store = FakeStore()

        def broken_head(branch=None):
            raise GitCommandError(["rev-parse"], 128, "not a git repository")

        store.head = broken_head
        orchestrator = _orchestrator(FakeIntrospector({"db1": []}), store)

        with pytest.raises(SynchronizationException) as exc_info:
            await orchestrator.sync_db_to_repo("db1")
        assert isinstance(exc_info.value.__cause__, GitCommandError)


class TestInitRepo:
    """Test init_repo onboarding."""

    async def test_seeds_empty_subtree(self) -> None:
        store = FakeStore()
        orchestrator = _orchestrator(FakeIntrospector({"db1": [_view("v1"), _proc("p1")]}), store)

        summary = await orchestrator.init_repo("db1")

        assert store.marker("db1") == summary.commit_id
        assert store.messages[summary.commit_id] == "Repo initialized with DB: db1"
        assert sorted(store.files()) == ["db1/procedure/dbo/p1.sql", "db1/view/dbo/v1.sql"]
        assert orchestrator.is_onboarded("db1")

    async def test_non_empty_subtree_rejected(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [_view("v1")], onboard=False)
        orchestrator = _orchestrator(FakeIntrospector({"db1": [_view("v1")]}), store)

        with pytest.raises(SynchronizationException, match="non-empty subtree"):
            await orchestrator.init_repo("db1")

    async def test_empty_database_rejected(self) -> None:
        store = FakeStore()
        orchestrator = _orchestrator(FakeIntrospector({"db1": []}), store)

        with pytest.raises(SynchronizationException, match="No database objects"):
            await orchestrator.init_repo("db1")
        assert store.trees == {}


# ------------------------------------------------------------------
# Repository -> database
# ------------------------------------------------------------------


class TestSyncRepoToDb:
    """Test sync_repo_to_db."""

    async def test_not_onboarded(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [_view("v1")], onboard=False)
        orchestrator = _orchestrator(FakeIntrospector({"db1": []}), store)

        with pytest.raises(DbNotOnboardedException, match="db1"):
            await orchestrator.sync_repo_to_db("db1")

    async def test_already_in_sync(self) -> None:
        """Only the owned object is compared; unowned procedures are ignored."""
        prefixed = _proc("prefix1_proc1")
        store = FakeStore()
        _seed(store, "db1", [prefixed])
        introspector = FakeIntrospector({"db1": [_proc("proc1"), _proc("proc2"), prefixed]})
        orchestrator = _orchestrator(introspector, store, owned_prefixes=["prefix1_"])

        summary = await orchestrator.sync_repo_to_db("db1")

        assert summary.message == "Already in sync"
        assert summary.result_description == "In sync"
        assert introspector.transactions == 0

    async def test_conflict_blocks_every_write(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [_view("view1", "SELECT 1")])
        store.commit(
            {
                "db1/view/dbo/view1.sql": _view("view1", "SELECT 3").definition,
                "db1/procedure/dbo/p_new.sql": _proc("p_new").definition,
            },
            [],
            "edit",
            "Dev <dev@example.com>",
        )
        marker = store.marker("db1")
        introspector = FakeIntrospector({"db1": [_view("view1", "SELECT 2")]})
        orchestrator = _orchestrator(introspector, store)

        with pytest.raises(DbOutOfSyncException) as exc_info:
            await orchestrator.sync_repo_to_db("db1")

        assert [ident.path for ident in exc_info.value.conflicts] == ["view/dbo/view1.sql"]
        assert "view/dbo/view1.sql" in str(exc_info.value)
        assert introspector.transactions == 0
        assert introspector.calls == []
        assert store.marker("db1") == marker

    async def test_conflict_blocks_dry_run(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [_view("view1", "SELECT 1")])
        orchestrator = _orchestrator(
            FakeIntrospector({"db1": [_view("view1", "SELECT 2")]}), store
        )

        with pytest.raises(DbOutOfSyncException):
            await orchestrator.sync_repo_to_db("db1", dry_run=True)

    async def test_dry_run_reports_plan_only(self) -> None:
        store = FakeStore()
        marker = _seed(store, "db1", [])
        _seed(store, "db1", [_view("v1")], onboard=False)
        introspector = FakeIntrospector({"db1": []})
        orchestrator = _orchestrator(introspector, store)

        summary = await orchestrator.sync_repo_to_db("db1", dry_run=True)

        assert summary.changes == ["upsert view/dbo/v1.sql"]
        assert summary.outcomes == []
        assert introspector.transactions == 0
        assert store.marker("db1") == marker

    async def test_applies_in_declared_order(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [])
        head = _seed(
            store,
            "db1",
            [
                DbObject("dbo", "tr1", DbObjectType.TRIGGER, "CREATE TRIGGER tr1 ON t1 AFTER INSERT AS SELECT 1"),
                _proc("p1"),
                _view("v1"),
                DbObject("dbo", "t1", DbObjectType.TABLE, "CREATE TABLE t1 (a int)"),
            ],
            onboard=False,
        )
        introspector = FakeIntrospector({"db1": []})
        orchestrator = _orchestrator(introspector, store)

        summary = await orchestrator.sync_repo_to_db("db1")

        assert [path for _, path, _ in introspector.calls] == [
            "table/dbo/t1.sql",
            "view/dbo/v1.sql",
            "procedure/dbo/p1.sql",
            "trigger/dbo/tr1.sql",
        ]
        assert all(db == "db1" for _, _, db in introspector.calls)
        assert [outcome.status for outcome in summary.outcomes] == ["created"] * 4
        assert summary.message == "Applied 4 change(s)"
        assert summary.commit_id == head
        assert store.marker("db1") == head
        assert set(introspector.objects("db1")) == {
            "table/dbo/t1.sql",
            "view/dbo/v1.sql",
            "procedure/dbo/p1.sql",
            "trigger/dbo/tr1.sql",
        }

    async def test_replace_and_drop(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [_view("v1", "SELECT 1"), _proc("p_old")])
        store.commit(
            {"db1/view/dbo/v1.sql": _view("v1", "SELECT 5").definition},
            ["db1/procedure/dbo/p_old.sql"],
            "edit",
            "Dev <dev@example.com>",
        )
        introspector = FakeIntrospector({"db1": [_view("v1", "SELECT 1"), _proc("p_old")]})
        orchestrator = _orchestrator(introspector, store)

        summary = await orchestrator.sync_repo_to_db("db1")

        assert {(o.path, o.status) for o in summary.outcomes} == {
            ("view/dbo/v1.sql", "replaced"),
            ("procedure/dbo/p_old.sql", "dropped"),
        }
        assert introspector.objects("db1") == {
            "view/dbo/v1.sql": _view("v1", "SELECT 5").definition
        }

    async def test_failure_rolls_back_and_keeps_marker(self) -> None:
        store = FakeStore()
        marker = _seed(store, "db1", [])
        _seed(store, "db1", [_view("v1"), _view("v2")], onboard=False)
        introspector = FakeIntrospector({"db1": []})
        introspector.fail_on = _view("v2").identity
        orchestrator = _orchestrator(introspector, store)

        with pytest.raises(SynchronizationException) as exc_info:
            await orchestrator.sync_repo_to_db("db1")

        assert isinstance(exc_info.value.__cause__, SQLAlchemyError)
        assert introspector.objects("db1") == {}
        assert store.marker("db1") == marker

    async def test_failed_commit_keeps_marker(self) -> None:
        """Every statement succeeds but the transaction fails to commit."""
        store = FakeStore()
        marker = _seed(store, "db1", [])
        _seed(store, "db1", [_view("v1")], onboard=False)
        introspector = FakeIntrospector({"db1": []})
        introspector.fail_on_commit = True
        orchestrator = _orchestrator(introspector, store)

        with pytest.raises(SynchronizationException):
            await orchestrator.sync_repo_to_db("db1")

        assert introspector.calls == [("apply", "view/dbo/v1.sql", "db1")]
        assert introspector.objects("db1") == {}
        assert store.marker("db1") == marker

    async def test_retry_after_failed_commit_applies(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [])
        head = _seed(store, "db1", [_view("v1")], onboard=False)
        introspector = FakeIntrospector({"db1": []})
        introspector.fail_on_commit = True
        orchestrator = _orchestrator(introspector, store)

        with pytest.raises(SynchronizationException):
            await orchestrator.sync_repo_to_db("db1")
        introspector.fail_on_commit = False
        summary = await orchestrator.sync_repo_to_db("db1")

        assert summary.message == "Applied 1 change(s)"
        assert store.marker("db1") == head

    async def test_ref_at_head_applies(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [])
        head = _seed(store, "db1", [_view("v1")], onboard=False)
        introspector = FakeIntrospector({"db1": []})
        orchestrator = _orchestrator(introspector, store)

        summary = await orchestrator.sync_repo_to_db("db1", ref="main")

        assert not summary.dry_run
        assert summary.commit_id == head
        assert store.marker("db1") == head

    async def test_ref_other_than_head_forces_dry_run(self) -> None:
        store = FakeStore()
        marker = _seed(store, "db1", [])
        older = _seed(store, "db1", [_view("v1")], onboard=False)
        _seed(store, "db1", [_view("v1"), _view("v2")], onboard=False)
        introspector = FakeIntrospector({"db1": []})
        orchestrator = _orchestrator(introspector, store)

        summary = await orchestrator.sync_repo_to_db("db1", ref=older)

        assert summary.dry_run
        assert summary.commit_id == older
        assert summary.changes == ["upsert view/dbo/v1.sql"]
        assert introspector.transactions == 0
        assert store.marker("db1") == marker

    async def test_unknown_ref(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [])
        orchestrator = _orchestrator(FakeIntrospector({"db1": []}), store)

        with pytest.raises(SynchronizationException, match="no-such-ref"):
            await orchestrator.sync_repo_to_db("db1", ref="no-such-ref")

    async def test_marker_moves_when_already_matching_head(self) -> None:
        """Database already equals a newer head: only the marker moves."""
        store = FakeStore()
        _seed(store, "db1", [])
        head = _seed(store, "db1", [_view("v1")], onboard=False)
        introspector = FakeIntrospector({"db1": [_view("v1")]})
        orchestrator = _orchestrator(introspector, store)

        summary = await orchestrator.sync_repo_to_db("db1")

        assert summary.message == "Already in sync"
        assert store.marker("db1") == head
        assert introspector.transactions == 0


class TestSyncRepoToDbs:
    """Test the multi-database batch."""

    async def test_statuses_per_database(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [])
        _seed(store, "db3", [_view("v1", "SELECT 1")])
        store.commit(
            {
                "db1/view/dbo/v1.sql": _view("v1").definition,
                "db3/view/dbo/v1.sql": _view("v1", "SELECT 3").definition,
            },
            [],
            "edit",
            "Dev <dev@example.com>",
        )
        introspector = FakeIntrospector(
            {"db1": [], "db2": [], "db3": [_view("v1", "SELECT 2")]}
        )
        orchestrator = _orchestrator(introspector, store, names=("db1", "db2", "db3"))

        results = await orchestrator.sync_repo_to_dbs(["db1", "db2", "db3", "db9"])

        assert [(r.db_name, r.status) for r in results] == [
            ("db1", SyncStatus.SYNCED),
            ("db2", SyncStatus.SKIPPED_NOT_ONBOARDED),
            ("db3", SyncStatus.SKIPPED_OUT_OF_SYNC),
            ("db9", SyncStatus.FAILED),
        ]
        assert introspector.objects("db1") == {"view/dbo/v1.sql": _view("v1").definition}
        assert introspector.objects("db3") == {"view/dbo/v1.sql": _view("v1", "SELECT 2").definition}

    async def test_dry_run_status(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [])
        orchestrator = _orchestrator(FakeIntrospector({"db1": []}), store)

        [result] = await orchestrator.sync_repo_to_dbs(["db1"], dry_run=True)

        assert result.status is SyncStatus.SUCCESS_DRY_RUN

    async def test_older_ref_reported_as_dry_run(self) -> None:
        store = FakeStore()
        older = _seed(store, "db1", [])
        _seed(store, "db1", [_view("v1")], onboard=False)
        introspector = FakeIntrospector({"db1": []})
        orchestrator = _orchestrator(introspector, store)

        [result] = await orchestrator.sync_repo_to_dbs(["db1"], ref=older)

        assert result.status is SyncStatus.SUCCESS_DRY_RUN
        assert introspector.transactions == 0

    async def test_empty_batch(self) -> None:
        orchestrator = _orchestrator(FakeIntrospector({}), FakeStore())
        assert await orchestrator.sync_repo_to_dbs([]) == []


class TestInspect:
    """Test read-only status reporting."""

    async def test_reports_conflicts_without_raising(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [_view("view1", "SELECT 1"), _proc("p1")])
        introspector = FakeIntrospector({"db1": [_view("view1", "SELECT 2"), _proc("p1")]})
        orchestrator = _orchestrator(introspector, store)

        result = await orchestrator.inspect("db1")

        assert result.statuses[_proc("p1").identity] is ObjectStatus.IN_SYNC
        assert result.conflicts == [_view("view1").identity]
        assert introspector.transactions == 0


# ------------------------------------------------------------------
# Request boundary
# ------------------------------------------------------------------


class TestRequestBoundary:
    """Test conversion of failures to SyncError."""

    async def test_success_returns_summary(self) -> None:
        orchestrator = _orchestrator(FakeIntrospector({"db1": [_view("v1")]}), FakeStore())
        outcome = await request_sync_db_to_repo(orchestrator, "db1", dry_run=True)
        assert isinstance(outcome, SyncSummary)

    async def test_unknown_database_is_bad_input(self) -> None:
        orchestrator = _orchestrator(FakeIntrospector({}), FakeStore())
        outcome = await request_sync_db_to_repo(orchestrator, "db9")
        assert isinstance(outcome, SyncError)
        assert outcome.kind == "UnknownDatabaseError"
        assert outcome.bad_input

    async def test_out_of_sync_is_not_bad_input(self) -> None:
        store = FakeStore()
        _seed(store, "db1", [_view("view1", "SELECT 1")])
        orchestrator = _orchestrator(
            FakeIntrospector({"db1": [_view("view1", "SELECT 2")]}), store
        )

        outcome = await request_sync_repo_to_db(orchestrator, "db1")

        assert isinstance(outcome, SyncError)
        assert outcome.kind == "DbOutOfSyncException"
        assert not outcome.bad_input
        assert "view/dbo/view1.sql" in outcome.message

    async def test_not_onboarded(self) -> None:
        orchestrator = _orchestrator(FakeIntrospector({"db1": []}), FakeStore())
        outcome = await request_sync_repo_to_db(orchestrator, "db1")
        assert isinstance(outcome, SyncError)
        assert outcome.kind == "DbNotOnboardedException"
