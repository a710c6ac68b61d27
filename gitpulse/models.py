"""Data models for gitpulse."""

import threading
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar

DETACHED_HEAD = "DETACHED"


@dataclass(frozen=True)
class RepositorySnapshot:
    """Point-in-time read of a repository's branch, head, status and remote fields."""

    branch: str
    head: str
    status: str = ""
    upstream: str | None = None
    ahead: int = 0
    behind: int = 0
    local_branches: frozenset[str] = frozenset()
    remote_branches: frozenset[str] = frozenset()
    remote_urls: Mapping[str, str] = field(default_factory=dict)
    # Fields whose read failed and hold defaults rather than observed values.
    degraded: frozenset[str] = frozenset()

    @property
    def is_detached(self) -> bool:
        """Check if the snapshot was taken in detached HEAD state."""
        return self.branch == DETACHED_HEAD

    @property
    def has_remote(self) -> bool:
        """Check if at least one remote URL is configured."""
        return bool(self.remote_urls)

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch": self.branch,
            "head": self.head,
            "status": self.status,
            "upstream": self.upstream,
            "ahead": self.ahead,
            "behind": self.behind,
            "local_branches": sorted(self.local_branches),
            "remote_branches": sorted(self.remote_branches),
            "remote_urls": dict(sorted(self.remote_urls.items())),
            "degraded": sorted(self.degraded),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RepositorySnapshot":
        """Rebuild a snapshot from `to_dict` output, rejecting malformed data."""
        for key in ("branch", "head", "status"):
            if not isinstance(data.get(key), str):
                raise ValueError(f"snapshot field {key!r} must be a string")
        upstream = data.get("upstream")
        if upstream is not None and not isinstance(upstream, str):
            raise ValueError("snapshot field 'upstream' must be a string or null")
        counts = {}
        for key in ("ahead", "behind"):
            value = data.get(key)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"snapshot field {key!r} must be a non-negative integer")
            counts[key] = value
        string_sets = {}
        for key in ("local_branches", "remote_branches", "degraded"):
            value = data.get(key, [])
            if not isinstance(value, list) or any(not isinstance(b, str) for b in value):
                raise ValueError(f"snapshot field {key!r} must be a list of strings")
            string_sets[key] = frozenset(value)
        urls = data.get("remote_urls", {})
        if not isinstance(urls, dict) or any(
            not isinstance(k, str) or not isinstance(v, str) for k, v in urls.items()
        ):
            raise ValueError("snapshot field 'remote_urls' must map strings to strings")
        return cls(
            branch=data["branch"],
            head=data["head"],
            status=data["status"],
            upstream=upstream,
            ahead=counts["ahead"],
            behind=counts["behind"],
            local_branches=string_sets["local_branches"],
            remote_branches=string_sets["remote_branches"],
            remote_urls=dict(urls),
            degraded=string_sets["degraded"],
        )


@dataclass(eq=False)
class WatchedRepository:
    """A monitored repository and its diff baseline."""

    id: str
    project_id: str
    path: Path
    enabled: bool = True
    last_snapshot: RepositorySnapshot | None = None
    last_poll_at: int | None = None
    # Reentrant so a watcher can be stopped from inside its own cycle.
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)


class ActivityType(str, Enum):
    BRANCH_CREATED = "BRANCH_CREATED"
    BRANCH_SWITCH = "BRANCH_SWITCH"
    COMMIT = "COMMIT"
    MERGE = "MERGE"
    PUSH = "PUSH"
    REMOTE_UPDATE = "REMOTE_UPDATE"
    WORKTREE_CHANGE = "WORKTREE_CHANGE"
    ERROR = "ERROR"


class BranchScope(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class BranchCreated:
    kind: ClassVar[ActivityType] = ActivityType.BRANCH_CREATED

    name: str
    scope: BranchScope


@dataclass(frozen=True)
class BranchSwitch:
    kind: ClassVar[ActivityType] = ActivityType.BRANCH_SWITCH

    from_branch: str
    to_branch: str


@dataclass(frozen=True)
class Commit:
    kind: ClassVar[ActivityType] = ActivityType.COMMIT

    branch: str
    head: str
    author: str
    subject: str


@dataclass(frozen=True)
class Merge:
    kind: ClassVar[ActivityType] = ActivityType.MERGE

    branch: str
    head: str
    parents_count: int


@dataclass(frozen=True)
class Push:
    kind: ClassVar[ActivityType] = ActivityType.PUSH

    branch: str
    head: str


@dataclass(frozen=True)
class RemoteUpdate:
    kind: ClassVar[ActivityType] = ActivityType.REMOTE_UPDATE

    branch: str
    ahead: int
    behind: int


@dataclass(frozen=True)
class WorktreeChange:
    kind: ClassVar[ActivityType] = ActivityType.WORKTREE_CHANGE

    summary: str


@dataclass(frozen=True)
class ErrorDetails:
    kind: ClassVar[ActivityType] = ActivityType.ERROR

    message: str
    command: str | None = None


ActivityDetails = (
    BranchCreated
    | BranchSwitch
    | Commit
    | Merge
    | Push
    | RemoteUpdate
    | WorktreeChange
    | ErrorDetails
)


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ActivityEvent:
    """A typed activity observed in one repository."""

    project_id: str
    repository_id: str
    details: ActivityDetails
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def type(self) -> ActivityType:
        return self.details.kind

    def to_dict(self) -> dict[str, Any]:
        details = {
            key: value.value if isinstance(value, Enum) else value
            for key, value in asdict(self.details).items()
        }
        return {
            "project_id": self.project_id,
            "repository_id": self.repository_id,
            "type": self.type.value,
            "details": details,
            "timestamp": self.timestamp.isoformat(),
        }


class ChangeType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RENAMED = "RENAMED"


@dataclass(frozen=True)
class FileChange:
    """A path in the working tree with its line-count statistics."""

    path: str
    change_type: ChangeType
    lines_added: int = 0
    lines_removed: int = 0
