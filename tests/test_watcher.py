from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest
from conftest import (
    GIT_AVAILABLE,
    HEAD_1,
    HEAD_2,
    FakeObserver,
    FakeRunner,
    ListSink,
    init_repo,
    run,
    script_git_dir,
    script_repo,
)
from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileOpenedEvent,
)

from gitpulse.git_ops import CommandFailed, GitRunner
from gitpulse.models import ActivityType, Commit, WatchedRepository
from gitpulse.scheduling import DebounceState
from gitpulse.state import StateReader
from gitpulse.watcher import (
    RepositoryWatcher,
    WatcherState,
    WatchRegistrationFailed,
    is_relevant,
)


class RecordingStore:
    def __init__(self) -> None:
        self.snapshots: list[tuple[str, str]] = []

    def record_snapshot(self, repository_id, snapshot) -> None:
        self.snapshots.append((repository_id, snapshot.head))

    def record_poll(self, repository_id, polled_at) -> None:
        pass


@pytest.fixture
def repo(tmp_path: Path, runner: FakeRunner) -> WatchedRepository:
    path = tmp_path / "repo"
    script_git_dir(runner, path / ".git")
    script_repo(runner)
    return WatchedRepository(id="r1", project_id="p1", path=path)


@pytest.fixture
def watcher(repo, runner, sink, scheduler, observer_factory) -> RepositoryWatcher:
    return RepositoryWatcher(
        repo,
        sink,
        runner=runner,
        scheduler=scheduler,
        observer_factory=observer_factory,
    )


def reads(runner: FakeRunner) -> int:
    return runner.count("rev-parse", "HEAD")


def test_start_seeds_baseline_without_events(watcher, repo, sink, observers) -> None:
    watcher.start()
    assert watcher.state is WatcherState.WATCHING
    assert repo.last_snapshot is not None
    assert repo.last_snapshot.head == HEAD_1
    assert sink.events == []
    [observer] = observers
    assert observer.started
    git_dir = repo.path / ".git"
    assert [(path, recursive) for _, path, recursive in observer.scheduled] == [
        (str(git_dir), False),
        (str(git_dir / "refs"), True),
    ]


def test_burst_of_notifications_runs_one_cycle(watcher, repo, runner, sink, scheduler) -> None:
    watcher.start()
    script_repo(runner, head=HEAD_2, author="Bob", subject="Fix bug")
    for _ in range(5):
        watcher.notify()
        scheduler.advance(0.1)
    assert sink.events == []
    scheduler.advance(0.4)
    assert reads(runner) == 2
    assert [e.details for e in sink.events] == [
        Commit(branch="main", head=HEAD_2, author="Bob", subject="Fix bug")
    ]
    assert repo.last_snapshot.head == HEAD_2


def test_read_failure_emits_error_and_keeps_baseline(watcher, repo, runner, sink, scheduler) -> None:
    watcher.start()
    seed = repo.last_snapshot
    runner.set(["rev-parse", "HEAD"], CommandFailed(["rev-parse", "HEAD"], 128, "corrupt"))
    watcher.notify()
    scheduler.advance(0.4)
    [error] = sink.events
    assert error.type is ActivityType.ERROR
    assert error.details.command == "git rev-parse HEAD"
    assert repo.last_snapshot is seed
    assert watcher.state is WatcherState.WATCHING

    script_repo(runner, head=HEAD_2)
    watcher.notify()
    scheduler.advance(0.4)
    assert sink.types() == [ActivityType.ERROR, ActivityType.COMMIT]


def test_stop_cancels_pending_cycle(watcher, repo, runner, sink, scheduler, observers) -> None:
    watcher.start()
    script_repo(runner, head=HEAD_2)
    watcher.notify()
    watcher.stop()
    scheduler.advance(1)
    assert sink.events == []
    assert reads(runner) == 1
    assert repo.last_snapshot is None
    assert watcher.state is WatcherState.IDLE
    assert observers[0].stopped
    watcher.notify()
    assert scheduler.pending == 0


def test_stop_during_read_swallows_result(repo, runner, sink, scheduler, observer_factory) -> None:
    class StoppingReader(StateReader):
        def read(self, path, include_remote_refresh=False):
            snapshot = super().read(path, include_remote_refresh)
            if reads(runner) > 1:
                watcher.stop()
            return snapshot

    watcher = RepositoryWatcher(
        repo,
        sink,
        runner=runner,
        reader=StoppingReader(runner),
        scheduler=scheduler,
        observer_factory=observer_factory,
    )
    watcher.start()
    script_repo(runner, head=HEAD_2)
    watcher.notify()
    scheduler.advance(0.4)
    assert sink.events == []
    assert repo.last_snapshot is None


def test_stop_waits_for_repository_lock(watcher, repo) -> None:
    watcher.start()
    seed = repo.last_snapshot
    with repo.lock:
        stopper = threading.Thread(target=watcher.stop)
        stopper.start()
        stopper.join(0.2)
        assert stopper.is_alive()
        assert repo.last_snapshot is seed
    stopper.join(5)
    assert not stopper.is_alive()
    assert repo.last_snapshot is None
    assert watcher.state is WatcherState.IDLE


def test_watcher_can_be_restarted(watcher, repo, runner, sink, scheduler) -> None:
    watcher.start()
    watcher.stop()
    watcher.start()
    script_repo(runner, head=HEAD_2)
    watcher.notify()
    scheduler.advance(0.4)
    assert sink.types() == [ActivityType.COMMIT]


def test_registration_failure_is_raised(repo, runner, sink, scheduler) -> None:
    watcher = RepositoryWatcher(
        repo,
        sink,
        runner=runner,
        scheduler=scheduler,
        observer_factory=lambda: FakeObserver(fail_with=PermissionError("denied")),
    )
    with pytest.raises(WatchRegistrationFailed):
        watcher.start()
    assert watcher.state is WatcherState.IDLE
    assert repo.last_snapshot is None


def test_non_repository_is_a_registration_failure(
    repo, runner, sink, scheduler, observer_factory, observers
) -> None:
    runner.set(["rev-parse", "--absolute-git-dir"], CommandFailed(["rev-parse"], 128, "not a git repo"))
    watcher = RepositoryWatcher(
        repo, sink, runner=runner, scheduler=scheduler, observer_factory=observer_factory
    )
    with pytest.raises(WatchRegistrationFailed):
        watcher.start()
    assert reads(runner) == 0
    assert observers == []
    assert watcher.state is WatcherState.IDLE


def test_seed_failure_reports_error_then_seeds_silently(watcher, repo, runner, sink, scheduler) -> None:
    runner.set(["rev-parse", "HEAD"], CommandFailed(["rev-parse", "HEAD"], 128, "unborn"))
    watcher.start()
    assert watcher.state is WatcherState.WATCHING
    assert sink.types() == [ActivityType.ERROR]
    assert repo.last_snapshot is None

    script_repo(runner, head=HEAD_2)
    watcher.notify()
    scheduler.advance(0.4)
    assert sink.types() == [ActivityType.ERROR]
    assert repo.last_snapshot.head == HEAD_2


def test_snapshots_are_persisted(repo, runner, sink, scheduler, observer_factory) -> None:
    store = RecordingStore()
    watcher = RepositoryWatcher(
        repo, sink, runner=runner, store=store, scheduler=scheduler, observer_factory=observer_factory
    )
    watcher.start()
    script_repo(runner, head=HEAD_2)
    watcher.notify()
    scheduler.advance(0.4)
    assert store.snapshots == [("r1", HEAD_1), ("r1", HEAD_2)]


def test_failing_sink_does_not_stall_cycles(repo, runner, scheduler, observer_factory) -> None:
    class BrokenSink:
        def emit(self, event) -> None:
            raise RuntimeError("sink gone")

    watcher = RepositoryWatcher(
        repo, BrokenSink(), runner=runner, scheduler=scheduler, observer_factory=observer_factory
    )
    watcher.start()
    script_repo(runner, head=HEAD_2)
    watcher.notify()
    scheduler.advance(0.4)
    assert repo.last_snapshot.head == HEAD_2


@pytest.mark.parametrize(
    "relative, expected",
    [
        ("HEAD", True),
        ("index", True),
        ("packed-refs", True),
        ("refs/heads/main", True),
        ("refs/remotes/origin/feature/x", True),
        ("index.lock", False),
        ("refs/heads/main.lock", False),
        ("objects/ab/cdef", False),
        ("logs/HEAD", False),
        ("FETCH_HEAD", False),
    ],
)
def test_is_relevant(tmp_path: Path, relative: str, expected: bool) -> None:
    git_dir = tmp_path / ".git"
    assert is_relevant(git_dir / relative, git_dir, git_dir) is expected


def test_handler_filters_events(watcher, repo, observers) -> None:
    watcher.start()
    handler = observers[0].scheduled[0][0]
    git_dir = repo.path / ".git"

    ignored = [
        FileModifiedEvent(str(git_dir / "objects" / "ab" / "cd")),
        FileCreatedEvent(str(git_dir / "index.lock")),
        FileOpenedEvent(str(git_dir / "HEAD")),
        DirModifiedEvent(str(git_dir / "refs" / "heads")),
    ]
    for event in ignored:
        handler.on_any_event(event)
    assert watcher.debouncer.state is DebounceState.IDLE

    handler.on_any_event(FileMovedEvent(str(git_dir / "index.lock"), str(git_dir / "index")))
    assert watcher.debouncer.state is DebounceState.PENDING


@pytest.mark.skipif(not GIT_AVAILABLE, reason="git missing")
def test_watch_real_repository(tmp_path: Path) -> None:
    path = init_repo(tmp_path / "repo")
    sink = ListSink()
    repo = WatchedRepository(id="r1", project_id="p1", path=path)
    watcher = RepositoryWatcher(repo, sink, runner=GitRunner(), debounce=0.3)
    watcher.start()
    try:
        (path / "a.txt").write_text("a\n")
        run(["git", "add", "a.txt"], cwd=path)
        run(["git", "commit", "-q", "-m", "add a"], cwd=path)
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline and ActivityType.COMMIT not in sink.types():
            time.sleep(0.1)
    finally:
        watcher.stop()
    assert ActivityType.COMMIT in sink.types()
    commit = next(e for e in sink.events if e.type is ActivityType.COMMIT)
    assert commit.details.subject == "add a"

