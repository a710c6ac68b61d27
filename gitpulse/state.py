"""Repository state reading: one consistent snapshot per call."""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import TypeVar

from gitpulse import git_ops
from gitpulse.git_ops import CommandError, CommandFailed, GitRunner
from gitpulse.models import DETACHED_HEAD, ChangeType, FileChange, RepositorySnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StateReader:
    """Composes git reads into a `RepositorySnapshot`."""

    def __init__(
        self,
        runner: GitRunner | None = None,
        *,
        timeout: float | None = None,
        fetch_timeout: float = git_ops.FETCH_TIMEOUT,
    ) -> None:
        self.runner = runner or GitRunner()
        self.timeout = timeout
        self.fetch_timeout = fetch_timeout

    def read(self, path: Path, include_remote_refresh: bool = False) -> RepositorySnapshot:
        """Read a snapshot; branch and head failures propagate, the rest degrade."""
        if include_remote_refresh:
            self.fetch(path)

        with ThreadPoolExecutor(max_workers=7, thread_name_prefix="gitpulse-read") as executor:
            branch_f = executor.submit(self.branch, path)
            head_f = executor.submit(self.head, path)
            status_f = executor.submit(self.status, path)
            upstream_f = executor.submit(self.upstream_ahead_behind, path)
            local_f = executor.submit(self.local_branches, path)
            remote_f = executor.submit(self.remote_branches, path)
            urls_f = executor.submit(self.remote_urls, path)

            branch = branch_f.result()
            head = head_f.result()
            degraded: set[str] = set()
            status = _degraded(status_f, "", path, "status", degraded)
            upstream, ahead, behind = _degraded(upstream_f, (None, 0, 0), path, "upstream", degraded)
            local = _degraded(local_f, frozenset(), path, "local_branches", degraded)
            remote = _degraded(remote_f, frozenset(), path, "remote_branches", degraded)
            urls = _degraded(urls_f, {}, path, "remote_urls", degraded)

        return RepositorySnapshot(
            branch=branch,
            head=head,
            status=status,
            upstream=upstream,
            ahead=ahead,
            behind=behind,
            local_branches=local,
            remote_branches=remote,
            remote_urls=urls,
            degraded=frozenset(degraded),
        )

    def _git(self, args: list[str], path: Path, timeout: float | None = None) -> str:
        return self.runner.run(args, path, timeout=timeout or self.timeout).stdout

    def fetch(self, path: Path) -> None:
        """Update remote-tracking refs without touching the working tree."""
        self._git(["fetch", "--prune"], path, timeout=self.fetch_timeout)

    def branch(self, path: Path) -> str:
        """Get the current branch name, or the detached-head sentinel."""
        try:
            return self._git(["symbolic-ref", "-q", "--short", "HEAD"], path)
        except CommandFailed as exc:
            # -q exits 1 without output only when HEAD is not a symbolic ref.
            if exc.exit_code == 1:
                return DETACHED_HEAD
            raise

    def head(self, path: Path) -> str:
        """Get the full commit id HEAD points at."""
        return self._git(["rev-parse", "HEAD"], path)

    def status(self, path: Path) -> str:
        """Get the porcelain working-tree status."""
        return self._git(["status", "--porcelain"], path)

    def upstream_ahead_behind(self, path: Path) -> tuple[str | None, int, int]:
        """Get the upstream tracking branch and ahead/behind counts."""
        try:
            upstream = self._git(["rev-parse", "--abbrev-ref", "HEAD@{upstream}"], path)
        except CommandFailed:
            return None, 0, 0
        if not upstream:
            return None, 0, 0
        out = self._git(["rev-list", "--left-right", "--count", f"HEAD...{upstream}"], path)
        ahead, behind = git_ops.parse_ahead_behind(out)
        return upstream, ahead, behind

    def local_branches(self, path: Path) -> frozenset[str]:
        """List all local branch names."""
        out = self._git(["for-each-ref", "--format=%(refname:short)", "refs/heads"], path)
        return frozenset(git_ops.parse_lines(out))

    def remote_branches(self, path: Path) -> frozenset[str]:
        """List remote-tracking branch names such as `origin/main`."""
        out = self._git(["for-each-ref", "--format=%(refname:short)", "refs/remotes"], path)
        return frozenset(
            name
            for name in git_ops.parse_lines(out)
            if "/" in name and not name.endswith("/HEAD")
        )

    def remote_urls(self, path: Path) -> dict[str, str]:
        """Get the fetch URL of each configured remote."""
        return git_ops.parse_remote_urls(self._git(["remote", "-v"], path))

    def file_changes(self, path: Path, status: str) -> list[FileChange]:
        """Turn porcelain status lines into per-file line statistics."""
        changes: list[FileChange] = []
        for line in status.splitlines():
            if len(line) < 4:
                continue
            code = line[:2]
            file_path = line[3:].strip()
            if " -> " in file_path:
                file_path = file_path.split(" -> ", 1)[1]
            change_type = _change_type(code)
            added = removed = 0
            if change_type is not ChangeType.DELETED:
                added, removed = self._numstat(path, file_path)
            changes.append(
                FileChange(
                    path=file_path,
                    change_type=change_type,
                    lines_added=added,
                    lines_removed=removed,
                )
            )
        return changes

    def _numstat(self, path: Path, file_path: str) -> tuple[int, int]:
        for args in (
            ["diff", "--numstat", "HEAD", "--", file_path],
            ["diff", "--numstat", "--", file_path],
        ):
            try:
                return git_ops.parse_numstat(self._git(args, path))
            except CommandError:
                continue
        return 0, 0


def _change_type(code: str) -> ChangeType:
    if "R" in code:
        return ChangeType.RENAMED
    if "A" in code or code == "??":
        return ChangeType.ADDED
    if "D" in code:
        return ChangeType.DELETED
    return ChangeType.MODIFIED


def _degraded(
    future: "Future[T]", default: T, path: Path, field_name: str, degraded: set[str]
) -> T:
    try:
        return future.result()
    except CommandError as exc:
        logger.warning("Reading %s failed for %s, using default: %s", field_name, path, exc)
        degraded.add(field_name)
        return default