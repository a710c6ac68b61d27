"""Per-project coordination: one watcher per repository plus periodic remote polling."""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from gitpulse.activity import GitInspector, carry_forward, classify, merge_remote
from gitpulse.cache_db import SnapshotStore
from gitpulse.git_ops import CommandError, GitRunner, InvalidArgument
from gitpulse.models import (
    ActivityEvent,
    ErrorDetails,
    RepositorySnapshot,
    WatchedRepository,
)
from gitpulse.scheduling import PeriodicTimer, Scheduler, ThreadingScheduler
from gitpulse.sinks import EventSink, safe_emit
from gitpulse.state import StateReader
from gitpulse.watcher import DEFAULT_DEBOUNCE, RepositoryWatcher, WatchRegistrationFailed

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 120.0
MAX_POLL_WORKERS = 4


class ProjectCoordinator:
    """Owns the repository watchers of one project and its remote poll timer."""

    def __init__(
        self,
        project_id: str,
        sink: EventSink,
        *,
        runner: GitRunner | None = None,
        reader: StateReader | None = None,
        store: SnapshotStore | None = None,
        scheduler: Scheduler | None = None,
        debounce: float = DEFAULT_DEBOUNCE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        observer_factory: Callable[[], BaseObserver] = Observer,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.project_id = project_id
        self.sink = sink
        self.runner = runner or GitRunner()
        self.reader = reader or StateReader(self.runner)
        self.store = store
        self.scheduler = scheduler or ThreadingScheduler()
        self.debounce = debounce
        self.poll_interval = poll_interval
        self._observer_factory = observer_factory
        self._clock = clock
        self._lock = threading.RLock()
        self._repositories: dict[str, WatchedRepository] = {}
        self._watchers: dict[str, RepositoryWatcher] = {}
        self._starting: set[str] = set()
        self._timer = PeriodicTimer(poll_interval, self.poll_once, self.scheduler)
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def repositories(self) -> list[WatchedRepository]:
        with self._lock:
            return list(self._repositories.values())

    def watcher(self, repository_id: str) -> RepositoryWatcher | None:
        with self._lock:
            return self._watchers.get(repository_id)

    def current_snapshot(self, repository_id: str) -> RepositorySnapshot | None:
        """Latest baseline for a repository, or None if unknown or not yet seeded."""
        with self._lock:
            repo = self._repositories.get(repository_id)
        return repo.last_snapshot if repo else None

    def start(self, repositories: Iterable[WatchedRepository], *, watch: bool = True) -> None:
        """Start watching every enabled repository and arm the poll timer.

        With `watch=False` the coordinator only registers the repositories so
        `poll_once()` can be driven by the caller; no watches, no timer.
        Watchers are seeded in parallel, outside the coordinator lock.
        """
        with self._lock:
            if self._running:
                return
            for repo in repositories:
                self._check_project(repo)
                self._repositories[repo.id] = repo
            self._running = True
            if not watch:
                return
            enabled = [repo for repo in self._repositories.values() if repo.enabled]
        if enabled:
            workers = min(len(enabled), MAX_POLL_WORKERS)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gitpulse-start") as executor:
                list(executor.map(self._start_watcher, enabled))
        with self._lock:
            if not self._running:
                return
            self._timer.start()
            watching = len(self._watchers)
            total = len(self._repositories)
        logger.info(
            "Project %s: watching %d of %d repositories, polling every %gs",
            self.project_id,
            watching,
            total,
            self.poll_interval,
        )

    def stop(self) -> None:
        """Cancel the poll timer, then stop every watcher."""
        with self._lock:
            self._running = False
            watchers = list(self._watchers.values())
            self._watchers.clear()
        self._timer.cancel()
        for watcher in watchers:
            watcher.stop()
        logger.info("Project %s: stopped", self.project_id)

    def add_repository(self, repo: WatchedRepository) -> None:
        with self._lock:
            self._check_project(repo)
            if repo.id in self._repositories:
                raise InvalidArgument(f"Repository {repo.id} is already registered")
            self._repositories[repo.id] = repo
            start = self._running and repo.enabled
        if start:
            self._start_watcher(repo)

    def remove_repository(self, repository_id: str) -> bool:
        with self._lock:
            repo = self._repositories.pop(repository_id, None)
            watcher = self._watchers.pop(repository_id, None)
        if watcher is not None:
            watcher.stop()
        return repo is not None

    def update_repository(
        self, repository_id: str, *, enabled: bool | None = None, path: Path | None = None
    ) -> None:
        """Change a repository's enabled flag or path, restarting only its watcher."""
        with self._lock:
            repo = self._repositories.get(repository_id)
            if repo is None:
                raise InvalidArgument(f"Unknown repository {repository_id}")
            watcher = self._watchers.pop(repository_id, None)
        if watcher is not None:
            watcher.stop()
        with self._lock:
            if enabled is not None:
                repo.enabled = enabled
            if path is not None:
                repo.path = path
            start = self._is_active(repo)
        if start:
            self._start_watcher(repo)

    def poll_once(self) -> list[ActivityEvent]:
        """Run one remote poll across the project; returns the emitted events."""
        with self._lock:
            if not self._running:
                return []
            targets = [
                repo
                for repo in self._repositories.values()
                if repo.enabled and repo.last_snapshot is not None and repo.last_snapshot.has_remote
            ]
        if not targets:
            return []
        logger.debug("Project %s: polling %d repositories", self.project_id, len(targets))
        workers = min(len(targets), MAX_POLL_WORKERS)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gitpulse-poll") as executor:
            results = list(executor.map(self._poll_repository, targets))
        return [event for events in results for event in events]

    def _poll_repository(self, repo: WatchedRepository) -> list[ActivityEvent]:
        now = int(self._clock())
        with repo.lock:
            if not self._is_active(repo):
                return []
            since = repo.last_poll_at
            if since is None:
                since = now - int(self.poll_interval)
            try:
                snapshot = self.reader.read(repo.path, include_remote_refresh=True)
            except CommandError as exc:
                logger.warning("Remote poll failed for %s: %s", repo.id, exc)
                events = [
                    ActivityEvent(
                        project_id=repo.project_id,
                        repository_id=repo.id,
                        details=ErrorDetails(message=str(exc), command=exc.command),
                    )
                ]
            else:
                snapshot = carry_forward(repo.last_snapshot, snapshot)
                events = classify(
                    repo.last_snapshot,
                    snapshot,
                    GitInspector(self.runner, repo.path),
                    project_id=repo.project_id,
                    repository_id=repo.id,
                    remote=True,
                    push_since=since,
                )
                if not self._is_active(repo):
                    return []
                repo.last_snapshot = merge_remote(repo.last_snapshot, snapshot)
                repo.last_poll_at = now
                self._persist(repo, repo.last_snapshot, now)
            if not self._is_active(repo):
                return []
            for event in events:
                safe_emit(self.sink, event)
            return events

    def _is_active(self, repo: WatchedRepository) -> bool:
        return self._running and repo.enabled and self._repositories.get(repo.id) is repo

    def _persist(self, repo: WatchedRepository, snapshot: RepositorySnapshot, polled_at: int) -> None:
        if self.store is None:
            return
        try:
            self.store.record_snapshot(repo.id, snapshot)
            self.store.record_poll(repo.id, polled_at)
        except Exception:
            logger.exception("Persisting poll result for %s failed", repo.id)

    def _start_watcher(self, repo: WatchedRepository) -> None:
        with self._lock:
            if not self._is_active(repo) or repo.id in self._watchers or repo.id in self._starting:
                return
            self._starting.add(repo.id)
        watcher = RepositoryWatcher(
            repo,
            self.sink,
            runner=self.runner,
            reader=self.reader,
            store=self.store,
            scheduler=self.scheduler,
            debounce=self.debounce,
            observer_factory=self._observer_factory,
        )
        try:
            watcher.start()
        except WatchRegistrationFailed as exc:
            with self._lock:
                self._starting.discard(repo.id)
            logger.error("Project %s: cannot watch %s: %s", self.project_id, repo.id, exc)
            safe_emit(
                self.sink,
                ActivityEvent(
                    project_id=repo.project_id,
                    repository_id=repo.id,
                    details=ErrorDetails(message=str(exc)),
                ),
            )
            return
        with self._lock:
            self._starting.discard(repo.id)
            keep = self._is_active(repo)
            if keep:
                self._watchers[repo.id] = watcher
        if not keep:
            # Stopped, disabled or removed while seeding.
            watcher.stop()

    def _check_project(self, repo: WatchedRepository) -> None:
        if repo.project_id != self.project_id:
            raise InvalidArgument(
                f"Repository {repo.id} belongs to project {repo.project_id}, not {self.project_id}"
            )
