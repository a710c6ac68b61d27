from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path

import pytest

from gitpulse import logging_setup
from gitpulse.git_ops import CommandFailed, CommandResult
from gitpulse.models import ActivityEvent, ActivityType
from gitpulse.scheduling import ManualScheduler

GIT_AVAILABLE = subprocess.run(["git", "--version"], capture_output=True).returncode == 0

HEAD_1 = "1" * 40
HEAD_2 = "2" * 40


class FakeRunner:
    """Scripted stand-in for `GitRunner`: replies are keyed by argument vector."""

    def __init__(self) -> None:
        self.responses: dict[tuple[str | None, tuple[str, ...]], str | Exception] = {}
        self.calls: list[tuple[str, tuple[str, ...]]] = []
        self._lock = threading.Lock()

    def set(self, args: Sequence[str], value: str | Exception, cwd: Path | None = None) -> None:
        key = (str(cwd) if cwd is not None else None, tuple(args))
        self.responses[key] = value

    def run(self, args: Sequence[str], cwd: Path | str, timeout: float | None = None) -> CommandResult:
        key = tuple(args)
        with self._lock:
            self.calls.append((str(cwd), key))
        value = self.responses.get((str(cwd), key))
        if value is None:
            value = self.responses.get((None, key))
        if value is None:
            raise CommandFailed(list(args), 128, f"unscripted: git {' '.join(args)}")
        if isinstance(value, Exception):
            raise value
        return CommandResult(stdout=value, stderr="")

    def count(self, *args: str, cwd: Path | None = None) -> int:
        with self._lock:
            return sum(
                1
                for call_cwd, call_args in self.calls
                if call_args == args and (cwd is None or call_cwd == str(cwd))
            )


def script_repo(
    runner: FakeRunner,
    *,
    cwd: Path | None = None,
    branch: str = "main",
    head: str = HEAD_1,
    status: str = "",
    upstream: str | None = None,
    ahead: int = 0,
    behind: int = 0,
    local: Iterable[str] = ("main",),
    remote: Iterable[str] = (),
    urls: Mapping[str, str] | None = None,
    parents: int = 1,
    author: str = "Alice",
    subject: str = "Change things",
    reflog: str = "",
) -> None:
    """Script every read `StateReader.read` and `GitInspector` issue for one state."""
    if branch == "DETACHED":
        runner.set(["symbolic-ref", "-q", "--short", "HEAD"], CommandFailed([], 1, ""), cwd)
    else:
        runner.set(["symbolic-ref", "-q", "--short", "HEAD"], branch, cwd)
    runner.set(["rev-parse", "HEAD"], head, cwd)
    runner.set(["status", "--porcelain"], status, cwd)
    if upstream is None:
        runner.set(
            ["rev-parse", "--abbrev-ref", "HEAD@{upstream}"],
            CommandFailed(["rev-parse"], 128, "no upstream configured"),
            cwd,
        )
    else:
        runner.set(["rev-parse", "--abbrev-ref", "HEAD@{upstream}"], upstream, cwd)
        runner.set(["rev-list", "--left-right", "--count", f"HEAD...{upstream}"], f"{ahead}\t{behind}", cwd)
        runner.set(
            [
                "log",
                "--walk-reflogs",
                "--date=unix",
                "--format=%gd%x1f%gs%x1f%H",
                f"refs/remotes/{upstream}",
            ],
            reflog,
            cwd,
        )
    runner.set(["for-each-ref", "--format=%(refname:short)", "refs/heads"], "\n".join(sorted(local)), cwd)
    runner.set(["for-each-ref", "--format=%(refname:short)", "refs/remotes"], "\n".join(sorted(remote)), cwd)
    remote_lines = []
    for name, url in (urls or {}).items():
        remote_lines.append(f"{name}\t{url} (fetch)")
        remote_lines.append(f"{name}\t{url} (push)")
    runner.set(["remote", "-v"], "\n".join(remote_lines), cwd)
    parent_ids = " ".join(f"{i:040x}" for i in range(1, parents + 1))
    runner.set(["rev-list", "--parents", "-n", "1", head], f"{head} {parent_ids}", cwd)
    runner.set(["log", "-1", "--format=%an%x1f%s", head], f"{author}\x1f{subject}", cwd)
    runner.set(["fetch", "--prune"], "", cwd)


def script_git_dir(runner: FakeRunner, git_dir: Path, cwd: Path | None = None) -> None:
    git_dir.mkdir(parents=True, exist_ok=True)
    (git_dir / "refs").mkdir(exist_ok=True)
    runner.set(["rev-parse", "--absolute-git-dir"], str(git_dir), cwd)
    runner.set(["rev-parse", "--git-common-dir"], str(git_dir), cwd)


class ListSink:
    def __init__(self) -> None:
        self.events: list[ActivityEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: ActivityEvent) -> None:
        with self._lock:
            self.events.append(event)

    def types(self) -> list[ActivityType]:
        return [event.type for event in self.events]


class FakeObserver:
    """Records watch registrations instead of touching the file system."""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.scheduled: list[tuple[object, str, bool]] = []
        self.started = False
        self.stopped = False
        self.fail_with = fail_with

    def schedule(self, handler: object, path: str, recursive: bool = False) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.scheduled.append((handler, path, recursive))

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def is_alive(self) -> bool:
        return self.started and not self.stopped

    def join(self, timeout: float | None = None) -> None:
        return None


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def sink() -> ListSink:
    return ListSink()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def observers() -> list[FakeObserver]:
    return []


@pytest.fixture
def observer_factory(observers: list[FakeObserver]):
    def factory() -> FakeObserver:
        observer = FakeObserver()
        observers.append(observer)
        return observer

    return factory


def run(cmd: list[str], cwd: Path | None = None) -> str:
    result = subprocess.run(
        cmd, cwd=str(cwd) if cwd else None, check=True, capture_output=True, text=True
    )
    return result.stdout.strip()


def init_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    run(["git", "init", "-q", "-b", "main"], cwd=path)
    run(["git", "config", "user.email", "test@example.com"], cwd=path)
    run(["git", "config", "user.name", "Test"], cwd=path)
    (path / "README.md").write_text("hello\n")
    run(["git", "add", "."], cwd=path)
    run(["git", "commit", "-q", "-m", "init"], cwd=path)
    return path


@pytest.fixture
def clean_root_logger(monkeypatch):
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    monkeypatch.setattr(logging_setup, "_CONFIGURED", False)
    yield root
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers = saved_handlers
    root.setLevel(saved_level)
