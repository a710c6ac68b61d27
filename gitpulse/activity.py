"""Activity classification: diff two snapshots into ordered activity events.

Detectors run in a fixed order and every detector that matches contributes:

1. local branches created
2. remote branches created
3. branch switch
4. merge (head moved to a commit with more than one parent)
5. commit (head moved on the same branch, not a merge)
6. remote update (ahead/behind changed)
7. push (remote polling only, from the upstream ref's reflog)
8. worktree change (only when nothing above fired)

A remote poll (`remote=True`) runs only the remote-aware detectors: remote
branches created, remote update and push. Local activity stays with the
file-system watcher.

Head-change detection runs before worktree detection so a commit is never
reported as a plain edit. Auxiliary reads (parents, commit metadata, reflog)
that fail become ERROR events in place of their detector; the rest of the
pass still runs. Fields the reader could not read keep their baseline
values, so a transient read failure never shows up as a change.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Protocol

from gitpulse import git_ops
from gitpulse.git_ops import CommandError, GitPulseError, GitRunner
from gitpulse.models import (
    ActivityDetails,
    ActivityEvent,
    BranchCreated,
    BranchScope,
    BranchSwitch,
    Commit,
    ErrorDetails,
    Merge,
    Push,
    RemoteUpdate,
    RepositorySnapshot,
    WorktreeChange,
    utcnow,
)

logger = logging.getLogger(__name__)

PUSH_MARKER = "update by push"
CLEAN_SUMMARY = "Working tree clean"

# Snapshot fields a remote poll owns; the rest belong to the watcher.
REMOTE_ATTRS = ("upstream", "ahead", "behind", "remote_branches", "remote_urls")

_DEGRADABLE_ATTRS = {
    "status": ("status",),
    "upstream": ("upstream", "ahead", "behind"),
    "local_branches": ("local_branches",),
    "remote_branches": ("remote_branches",),
    "remote_urls": ("remote_urls",),
}


class ClassificationAuxiliaryFailed(GitPulseError):
    """A single detector's metadata read failed."""

    def __init__(self, detector: str, cause: CommandError) -> None:
        self.detector = detector
        self.command = cause.command
        super().__init__(f"{detector}: {cause}")


@dataclass(frozen=True)
class CommitMeta:
    """Author and subject of one commit."""

    author: str
    subject: str


class CommitInspector(Protocol):
    """Auxiliary reads the classifier needs beyond the two snapshots."""

    def parents(self, head: str) -> list[str]: ...

    def commit_meta(self, head: str) -> CommitMeta: ...

    def pushes_since(self, upstream: str, since: int) -> list[git_ops.ReflogEntry]: ...


class GitInspector:
    """`CommitInspector` backed by git commands in one repository."""

    def __init__(self, runner: GitRunner, path: Path) -> None:
        self.runner = runner
        self.path = path

    def parents(self, head: str) -> list[str]:
        out = self.runner.run(["rev-list", "--parents", "-n", "1", head], self.path).stdout
        # First token is the commit itself.
        return out.split()[1:]

    def commit_meta(self, head: str) -> CommitMeta:
        out = self.runner.run(["log", "-1", "--format=%an%x1f%s", head], self.path).stdout
        author, _, subject = out.partition("\x1f")
        return CommitMeta(author=author, subject=subject)

    def pushes_since(self, upstream: str, since: int) -> list[git_ops.ReflogEntry]:
        out = self.runner.run(
            [
                "log",
                "--walk-reflogs",
                "--date=unix",
                "--format=%gd%x1f%gs%x1f%H",
                f"refs/remotes/{upstream}",
            ],
            self.path,
        ).stdout
        return [
            entry
            for entry in git_ops.parse_reflog(out)
            if entry.timestamp > since and PUSH_MARKER in entry.subject.lower()
        ]


def classify(
    previous: RepositorySnapshot | None,
    current: RepositorySnapshot,
    inspector: CommitInspector,
    *,
    project_id: str,
    repository_id: str,
    remote: bool = False,
    push_since: int | None = None,
    now: datetime | None = None,
) -> list[ActivityEvent]:
    """Compare two consecutive snapshots and return the activities between them."""
    if previous is None:
        return []
    current = carry_forward(previous, current)

    details: list[ActivityDetails] = []

    if not remote:
        for name in sorted(current.local_branches - previous.local_branches):
            details.append(BranchCreated(name=name, scope=BranchScope.LOCAL))

    for name in sorted(current.remote_branches - previous.remote_branches):
        details.append(BranchCreated(name=name, scope=BranchScope.REMOTE))

    if not remote and current.branch != previous.branch:
        details.append(BranchSwitch(from_branch=previous.branch, to_branch=current.branch))

    if not remote and current.head != previous.head:
        details.extend(
            _detect_head_change(current, inspector, same_branch=current.branch == previous.branch)
        )

    if current.ahead != previous.ahead or current.behind != previous.behind:
        details.append(RemoteUpdate(branch=current.branch, ahead=current.ahead, behind=current.behind))

    if remote and current.upstream and push_since is not None:
        details.extend(_detect_push(current, current.upstream, inspector, push_since))

    if not remote and not details and current.status != previous.status:
        details.append(WorktreeChange(summary=current.status or CLEAN_SUMMARY))

    timestamp = now or utcnow()
    return [
        ActivityEvent(
            project_id=project_id,
            repository_id=repository_id,
            details=item,
            timestamp=timestamp,
        )
        for item in details
    ]


def carry_forward(
    previous: RepositorySnapshot | None, current: RepositorySnapshot
) -> RepositorySnapshot:
    """Replace fields of `current` whose read failed with the baseline's values."""
    if previous is None or not current.degraded:
        return current
    updates = {}
    for name in current.degraded:
        for attr in _DEGRADABLE_ATTRS.get(name, ()):
            updates[attr] = getattr(previous, attr)
    return replace(current, degraded=current.degraded & previous.degraded, **updates)


def _detect_head_change(
    current: RepositorySnapshot, inspector: CommitInspector, *, same_branch: bool
) -> list[ActivityDetails]:
    try:
        parents = _auxiliary("merge", inspector.parents, current.head)
    except ClassificationAuxiliaryFailed as exc:
        return [_error(exc)]
    if len(parents) > 1:
        return [Merge(branch=current.branch, head=current.head, parents_count=len(parents))]
    if not same_branch:
        # Checking out another branch moves HEAD without committing.
        return []
    try:
        meta = _auxiliary("commit", inspector.commit_meta, current.head)
    except ClassificationAuxiliaryFailed as exc:
        return [_error(exc)]
    return [
        Commit(branch=current.branch, head=current.head, author=meta.author, subject=meta.subject)
    ]


def _detect_push(
    current: RepositorySnapshot, upstream: str, inspector: CommitInspector, since: int
) -> list[ActivityDetails]:
    try:
        pushes = _auxiliary("push", inspector.pushes_since, upstream, since)
    except ClassificationAuxiliaryFailed as exc:
        return [_error(exc)]
    if not pushes:
        return []
    return [Push(branch=current.branch, head=pushes[0].commit or current.head)]


def _auxiliary(detector, func, *args):
    try:
        return func(*args)
    except CommandError as exc:
        logger.warning("Auxiliary read for %s detection failed: %s", detector, exc)
        raise ClassificationAuxiliaryFailed(detector, exc) from exc


def _error(exc: ClassificationAuxiliaryFailed) -> ErrorDetails:
    return ErrorDetails(message=str(exc), command=exc.command)


def merge_remote(
    baseline: RepositorySnapshot | None, fetched: RepositorySnapshot
) -> RepositorySnapshot:
    """Take the remote fields of `fetched` into `baseline`, keeping its local fields."""
    if baseline is None:
        return fetched
    return replace(baseline, **{attr: getattr(fetched, attr) for attr in REMOTE_ATTRS})
