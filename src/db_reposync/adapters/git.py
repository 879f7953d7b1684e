"""Git-backed repository store.

Implements the ``RepositoryStore`` protocol by driving the ``git`` executable
through ``subprocess.run``. Only plumbing commands are used, so the store
works on bare repositories and never touches a working tree:

- reads: ``ls-tree`` + ``cat-file --batch`` at a ref
- commits: ``hash-object`` / ``update-index`` into a temporary index,
  ``write-tree``, ``commit-tree``
- ref moves: one ``update-ref --stdin`` call, which git applies all-or-nothing

Sync markers are lightweight tags (``refs/tags/<db_name>``).

When a remote is configured, every ref move is pushed with
``git push --atomic``; if the push fails, the local refs are moved back.

Usage:
    from db_reposync.adapters.git import GitRepositoryStore

    store = GitRepositoryStore("/srv/schema-repo", branch="main")
    objects = store.list_objects("databases/db1")
    commit_id = store.commit(
        {"databases/db1/view/dbo/v1.sql": "CREATE VIEW v1 AS SELECT 1"},
        deletes=[],
        message="Sync db1",
        author="Schema Sync <sync@example.com>",
        markers=["db1"],
    )
"""

import logging
import os
import re
import subprocess
import tempfile
from collections.abc import Iterable, Mapping
from pathlib import Path

from db_reposync.schema.models import SQL_FILE_EXTENSION, RepoObject

logger = logging.getLogger(__name__)

ZERO_OID = "0" * 40

_AUTHOR_PATTERN = re.compile(r"^\s*(?P<name>.*?)\s*<(?P<email>[^>]*)>\s*$")


class GitCommandError(RuntimeError):
    """Raised when a git command exits with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        command = " ".join(args)
        super().__init__(
            f"git {command} failed (exit {returncode}): {stderr.strip()}"
        )
        self.command = args
        self.returncode = returncode
        self.stderr = stderr


def parse_author(author: str) -> tuple[str, str]:
    """Split ``"Name <email>"`` into its parts.

    Raises:
        ValueError: If ``author`` is not in ``Name <email>`` form.
    """
    match = _AUTHOR_PATTERN.match(author)
    if not match or not match.group("name"):
        raise ValueError(f"Author must look like 'Name <email>': {author!r}")
    return match.group("name"), match.group("email")


class GitRepositoryStore:
    """Repository store over a local git repository.

    Args:
        path: Repository directory (bare or with a working tree).
        branch: Branch that holds the schema files.
        remote: Optional remote name; ref moves are pushed to it.
        git_executable: Name or path of the ``git`` binary.
        timeout: Seconds before a single git command is aborted.
    """

    def __init__(
        self,
        path: str | Path,
        branch: str = "main",
        remote: str | None = None,
        git_executable: str = "git",
        timeout: float = 120,
    ) -> None:
        self.path = Path(path)
        self.branch = branch
        self.remote = remote or None
        self._git = git_executable
        self._timeout = timeout

    @classmethod
    def init(
        cls,
        path: str | Path,
        branch: str = "main",
        bare: bool = True,
        **kwargs,
    ) -> "GitRepositoryStore":
        """Create a new repository at ``path`` and return a store for it."""
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        store = cls(path, branch=branch, **kwargs)
        store._run(["init", "--quiet", *(["--bare"] if bare else [])])
        store._run(["symbolic-ref", "HEAD", f"refs/heads/{branch}"])
        logger.info("Initialized git repository at %s (branch %s)", path, branch)
        return store

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _run(
        self,
        args: list[str],
        input: bytes | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run ``git -C <path> <args>`` and capture raw output."""
        logger.debug("git %s", " ".join(args))
        result = subprocess.run(
            [self._git, "-C", str(self.path), *args],
            input=input,
            capture_output=True,
            env=dict(env) if env is not None else None,
            timeout=self._timeout,
            check=False,
        )
        if check and result.returncode != 0:
            raise GitCommandError(
                args, result.returncode, result.stderr.decode("utf-8", "replace")
            )
        return result

    def _output(self, args: list[str], **kwargs) -> str:
        return self._run(args, **kwargs).stdout.decode("utf-8").strip()

    def _resolve(self, ref: str) -> str | None:
        """Resolve ``ref`` to a commit id, ``None`` if it does not exist."""
        result = self._run(
            ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False
        )
        if result.returncode != 0:
            return None
        return result.stdout.decode("utf-8").strip()

    def _branch_ref(self, branch: str | None) -> str:
        return f"refs/heads/{branch or self.branch}"

    @staticmethod
    def _marker_ref(name: str) -> str:
        return f"refs/tags/{name}"

    def _update_refs(self, updates: Mapping[str, str | None]) -> None:
        """Move refs in one transaction; ``None`` deletes the ref.

        ``git update-ref --stdin`` applies every line or none of them.
        """
        lines = []
        for ref, new in updates.items():
            if new is None:
                lines.append(f"delete {ref}\n")
            else:
                lines.append(f"update {ref} {new}\n")
        self._run(["update-ref", "--stdin"], input="".join(lines).encode("utf-8"))

    def _push(self, refs: Iterable[str]) -> None:
        refspecs = [f"+{ref}:{ref}" for ref in refs]
        self._run(["push", "--atomic", "--quiet", self.remote, *refspecs])

    def _move_refs(self, updates: Mapping[str, str | None]) -> None:
        """Move refs locally, then push; roll local refs back if the push fails."""
        previous = {ref: self._resolve(ref) for ref in updates}
        self._update_refs(updates)
        if not self.remote:
            return
        try:
            self._push(updates.keys())
        except GitCommandError:
            logger.error("Push to %s failed, restoring local refs", self.remote)
            self._update_refs(previous)
            raise

    def _read_blobs(self, shas: list[str]) -> list[bytes]:
        """Read blob contents with a single ``cat-file --batch`` process."""
        if not shas:
            return []
        stdin = "".join(f"{sha}\n" for sha in shas).encode("ascii")
        out = self._run(["cat-file", "--batch"], input=stdin).stdout

        blobs: list[bytes] = []
        pos = 0
        for sha in shas:
            header_end = out.index(b"\n", pos)
            header = out[pos:header_end].decode("ascii").split()
            if len(header) != 3:
                raise GitCommandError(
                    ["cat-file", "--batch"], 1, f"missing object {sha}"
                )
            size = int(header[2])
            start = header_end + 1
            blobs.append(out[start : start + size])
            pos = start + size + 1
        return blobs

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def head(self, branch: str | None = None) -> str | None:
        return self._resolve(self._branch_ref(branch))

    def marker(self, name: str) -> str | None:
        return self._resolve(self._marker_ref(name))

    def resolve(self, ref: str) -> str | None:
        return self._resolve(ref)

    def list_objects(self, prefix: str, ref: str | None = None) -> list[RepoObject]:
        """List ``.sql`` files under ``prefix`` at ``ref``.

        Returns an empty list when the ref does not exist yet (unborn branch).
        Paths are relative to ``prefix``.
        """
        commit = self._resolve(ref or self._branch_ref(None))
        if commit is None:
            return []

        prefix = prefix.strip("/")
        args = ["ls-tree", "-r", "-z", "--full-tree", commit]
        if prefix:
            args += ["--", f"{prefix}/"]
        listing = self._run(args).stdout.decode("utf-8")

        paths: list[str] = []
        shas: list[str] = []
        for entry in filter(None, listing.split("\0")):
            meta, path = entry.split("\t", 1)
            _mode, kind, sha = meta.split()
            if kind != "blob" or not path.endswith(SQL_FILE_EXTENSION):
                continue
            paths.append(path[len(prefix) + 1 :] if prefix else path)
            shas.append(sha)

        return [
            RepoObject(path=path, definition=blob.decode("utf-8"))
            for path, blob in zip(paths, self._read_blobs(shas))
        ]

    def read_file(self, path: str, ref: str | None = None) -> str | None:
        """Content of one file at ``ref``, ``None`` if it is not there."""
        commit = self._resolve(ref or self._branch_ref(None))
        if commit is None:
            return None
        result = self._run(["cat-file", "blob", f"{commit}:{path}"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.decode("utf-8")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def commit(
        self,
        writes: Mapping[str, str],
        deletes: Iterable[str],
        message: str,
        author: str,
        branch: str | None = None,
        markers: Iterable[str] = (),
    ) -> str:
        """Write ``writes`` and remove ``deletes`` as exactly one commit.

        The branch and all ``markers`` move to the new commit in the same
        ref transaction. The branch update is guarded by its previous value,
        so a concurrent writer makes the whole transaction fail instead of
        being overwritten.
        """
        name, email = parse_author(author)
        branch_ref = self._branch_ref(branch)
        parent = self._resolve(branch_ref)

        with tempfile.TemporaryDirectory(prefix="reposync-index-") as tmp:
            env = {
                **os.environ,
                "GIT_INDEX_FILE": os.path.join(tmp, "index"),
                "GIT_AUTHOR_NAME": name,
                "GIT_AUTHOR_EMAIL": email,
                "GIT_COMMITTER_NAME": name,
                "GIT_COMMITTER_EMAIL": email,
            }
            if parent:
                self._run(["read-tree", parent], env=env)
            else:
                self._run(["read-tree", "--empty"], env=env)

            index_info: list[str] = []
            for path, content in writes.items():
                sha = self._output(
                    ["hash-object", "-w", "--stdin"], input=content.encode("utf-8")
                )
                index_info.append(f"100644 {sha}\t{path}\0")
            for path in deletes:
                index_info.append(f"0 {ZERO_OID}\t{path}\0")

            if index_info:
                self._run(
                    ["update-index", "-z", "--index-info"],
                    input="".join(index_info).encode("utf-8"),
                    env=env,
                )

            tree = self._output(["write-tree"], env=env)
            parent_args = ["-p", parent] if parent else []
            commit_id = self._output(
                ["commit-tree", tree, *parent_args],
                input=message.encode("utf-8"),
                env=env,
            )

        updates: dict[str, str | None] = {
            self._marker_ref(marker): commit_id for marker in markers
        }
        # Guarded update: fails if the branch moved since it was read
        guarded = f"{commit_id} {parent or ZERO_OID}"
        updates = {branch_ref: guarded, **updates}
        self._move_refs(updates)

        logger.info(
            "Committed %s on %s (%d written, %d deleted)",
            commit_id[:12],
            branch_ref,
            len(writes),
            len(index_info) - len(writes),
        )
        return commit_id

    def set_markers(self, names: Iterable[str], commit_id: str) -> None:
        names = list(names)
        updates: dict[str, str | None] = {
            self._marker_ref(name): commit_id for name in names
        }
        if not updates:
            return
        self._move_refs(updates)
        logger.info("Moved markers %s to %s", sorted(names), commit_id[:12])

    def fetch(self) -> None:
        """Fetch the branch and all markers from the remote, if any."""
        if not self.remote:
            return
        branch_ref = self._branch_ref(None)
        self._run([
            "fetch", "--quiet", "--force", "--update-head-ok", self.remote,
            f"+{branch_ref}:{branch_ref}",
            "+refs/tags/*:refs/tags/*",
        ])
