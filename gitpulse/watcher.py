"""Per-repository file-system watcher with debounced, single-flight cycles."""

import logging
import threading
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from gitpulse import git_ops
from gitpulse.activity import GitInspector, carry_forward, classify
from gitpulse.cache_db import SnapshotStore
from gitpulse.git_ops import CommandError, GitPulseError
from gitpulse.models import ActivityEvent, ErrorDetails, RepositorySnapshot, WatchedRepository
from gitpulse.scheduling import Debouncer, Scheduler, ThreadingScheduler
from gitpulse.sinks import EventSink, safe_emit
from gitpulse.state import StateReader

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 0.4

# Opened/closed events are excluded: our own git reads open these files.
_CHANGE_EVENTS = {EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED}
_ROOT_FILES = {"HEAD", "index", "packed-refs"}


class WatchRegistrationFailed(GitPulseError):
    """The file-system watch for a repository could not be established."""


class WatcherState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    WATCHING = "watching"
    STOPPING = "stopping"


def _to_path(src_path: bytes | str) -> Path:
    if isinstance(src_path, bytes):
        return Path(src_path.decode())
    return Path(src_path)


def resolve_git_dirs(runner: git_ops.GitRunner, path: Path) -> tuple[Path, Path]:
    """Return (git dir, common dir); they differ for linked worktrees."""
    git_dir = git_ops.git_dir(runner, path)
    common = Path(
        runner.run(["rev-parse", "--git-common-dir"], path, timeout=git_ops.LIVENESS_TIMEOUT).stdout
    )
    if not common.is_absolute():
        common = (path / common).resolve()
    return git_dir, common


def is_relevant(changed: Path, git_dir: Path, common_dir: Path) -> bool:
    """Check whether a changed path is HEAD, the index, or a reference."""
    if changed.suffix == ".lock":
        return False
    for root in {git_dir, common_dir}:
        try:
            rel = changed.relative_to(root)
        except ValueError:
            continue
        if rel.parts and rel.parts[0] == "refs":
            return True
        if len(rel.parts) == 1 and rel.parts[0] in _ROOT_FILES:
            return True
    return False


class _GitMetadataHandler(FileSystemEventHandler):
    """Watchdog handler that forwards relevant metadata changes to the watcher."""

    def __init__(self, watcher: "RepositoryWatcher") -> None:
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _CHANGE_EVENTS:
            return
        paths = [_to_path(event.src_path)]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(_to_path(dest))
        for path in paths:
            if self._watcher.is_relevant(path):
                self._watcher.notify()
                return


class RepositoryWatcher:
    """Owns the watch lifecycle of one repository.

    IDLE -> STARTING -> WATCHING -> STOPPING -> IDLE. While watching, every
    relevant notification touches a debouncer; once the burst goes quiet the
    watcher reads a snapshot, classifies it against the baseline, replaces the
    baseline and forwards the events to the sink.
    """

    def __init__(
        self,
        repository: WatchedRepository,
        sink: EventSink,
        *,
        runner: git_ops.GitRunner | None = None,
        reader: StateReader | None = None,
        store: SnapshotStore | None = None,
        scheduler: Scheduler | None = None,
        debounce: float = DEFAULT_DEBOUNCE,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        self.repository = repository
        self.sink = sink
        self.runner = runner or git_ops.GitRunner()
        self.reader = reader or StateReader(self.runner)
        self.store = store
        self.inspector = GitInspector(self.runner, repository.path)
        self._observer_factory = observer_factory
        self._observer: BaseObserver | None = None
        self._scheduler = scheduler or ThreadingScheduler()
        self._debounce = debounce
        self._debouncer = Debouncer(debounce, self._cycle, self._scheduler)
        self._state = WatcherState.IDLE
        self._state_lock = threading.Lock()
        self._git_dir: Path | None = None
        self._common_dir: Path | None = None

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def debouncer(self) -> Debouncer:
        return self._debouncer

    def start(self) -> None:
        """Seed the baseline and register the file-system watch."""
        with self._state_lock:
            if self._state is not WatcherState.IDLE:
                return
            self._state = WatcherState.STARTING
            # A cancelled debouncer stays cancelled; each start gets a fresh one.
            self._debouncer = Debouncer(self._debounce, self._cycle, self._scheduler)
        repo = self.repository
        try:
            self._git_dir, self._common_dir = resolve_git_dirs(self.runner, repo.path)
        except (CommandError, git_ops.InvalidArgument) as exc:
            with self._state_lock:
                self._state = WatcherState.IDLE
            raise WatchRegistrationFailed(f"{repo.path} is not a git repository: {exc}") from exc

        self._seed()

        try:
            self._observer = self._register()
        except OSError as exc:
            with repo.lock:
                repo.last_snapshot = None
            with self._state_lock:
                self._state = WatcherState.IDLE
            raise WatchRegistrationFailed(f"Cannot watch {self._git_dir}: {exc}") from exc

        with self._state_lock:
            self._state = WatcherState.WATCHING
        logger.info("Watching repository %s at %s", repo.id, repo.path)

    def stop(self) -> None:
        """Unregister the watch, cancel pending work and discard the baseline."""
        with self._state_lock:
            if self._state is not WatcherState.WATCHING:
                return
            self._state = WatcherState.STOPPING
        self._debouncer.cancel()
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            if observer.is_alive():
                observer.join(timeout=5)
        with self.repository.lock:
            self.repository.last_snapshot = None
        with self._state_lock:
            self._state = WatcherState.IDLE
        logger.info("Stopped watching repository %s", self.repository.id)

    @property
    def is_watching(self) -> bool:
        return self._state is WatcherState.WATCHING

    def is_relevant(self, path: Path) -> bool:
        if self._git_dir is None or self._common_dir is None:
            return False
        return is_relevant(path, self._git_dir, self._common_dir)

    def notify(self) -> None:
        """Record a raw metadata change; coalesced by the debouncer."""
        if self._state is WatcherState.WATCHING:
            self._debouncer.touch()

    def _seed(self) -> None:
        repo = self.repository
        with repo.lock:
            try:
                snapshot = self.reader.read(repo.path)
            except CommandError as exc:
                logger.warning("Initial read failed for %s: %s", repo.id, exc)
                repo.last_snapshot = None
                safe_emit(self.sink, self._error_event(exc))
                return
            repo.last_snapshot = snapshot
            self._record(snapshot)

    def _register(self) -> BaseObserver:
        assert self._git_dir is not None and self._common_dir is not None
        observer = self._observer_factory()
        handler = _GitMetadataHandler(self)
        observer.schedule(handler, str(self._git_dir), recursive=False)
        if self._common_dir != self._git_dir:
            observer.schedule(handler, str(self._common_dir), recursive=False)
        refs = self._common_dir / "refs"
        if refs.is_dir():
            observer.schedule(handler, str(refs), recursive=True)
        observer.start()
        return observer

    def _cycle(self) -> None:
        repo = self.repository
        with repo.lock:
            if not self.is_watching:
                return
            try:
                snapshot = self.reader.read(repo.path)
            except CommandError as exc:
                logger.warning("Snapshot read failed for %s: %s", repo.id, exc)
                events = [self._error_event(exc)]
            else:
                snapshot = carry_forward(repo.last_snapshot, snapshot)
                events = classify(
                    repo.last_snapshot,
                    snapshot,
                    self.inspector,
                    project_id=repo.project_id,
                    repository_id=repo.id,
                )
                if not self.is_watching:
                    return
                repo.last_snapshot = snapshot
                self._record(snapshot)
            if not self.is_watching:
                return
            logger.debug("Cycle for %s produced %d event(s)", repo.id, len(events))
            for event in events:
                safe_emit(self.sink, event)

    def _record(self, snapshot: RepositorySnapshot) -> None:
        if self.store is None:
            return
        try:
            self.store.record_snapshot(self.repository.id, snapshot)
        except Exception:
            logger.exception("Recording snapshot for %s failed", self.repository.id)

    def _error_event(self, exc: CommandError) -> ActivityEvent:
        return ActivityEvent(
            project_id=self.repository.project_id,
            repository_id=self.repository.id,
            details=ErrorDetails(message=str(exc), command=exc.command),
        )
