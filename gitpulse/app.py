import hashlib
import logging
from collections.abc import Callable
from itertools import groupby
from pathlib import Path
from typing import Any

from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from gitpulse import git_ops
from gitpulse.cache_db import RepositoryStore
from gitpulse.coordinator import ProjectCoordinator
from gitpulse.git_ops import CommandError, GitRunner, InvalidArgument
from gitpulse.models import ActivityEvent, WatchedRepository
from gitpulse.scheduling import Scheduler, ThreadingScheduler
from gitpulse.settings import Settings
from gitpulse.sinks import EventSink
from gitpulse.state import StateReader

logger = logging.getLogger(__name__)


def repository_id_for(path: Path) -> str:
    return hashlib.sha1(str(path).encode("utf-8")).hexdigest()[:12]


class App:
    def __init__(
        self,
        settings: Settings,
        sink: EventSink,
        *,
        store: RepositoryStore | None = None,
        runner: GitRunner | None = None,
        scheduler: Scheduler | None = None,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        self.settings = settings
        self.sink = sink
        self.store = store or RepositoryStore(settings.db_path)
        self.runner = runner or GitRunner(default_timeout=settings.command_timeout_seconds)
        self.reader = StateReader(self.runner, fetch_timeout=settings.fetch_timeout_seconds)
        self.scheduler = scheduler or ThreadingScheduler()
        self._observer_factory = observer_factory
        self.coordinators: dict[str, ProjectCoordinator] = {}

    def _coordinator(self, project_id: str) -> ProjectCoordinator:
        return ProjectCoordinator(
            project_id,
            self.sink,
            runner=self.runner,
            reader=self.reader,
            store=self.store,
            scheduler=self.scheduler,
            debounce=self.settings.debounce_seconds,
            poll_interval=self.settings.poll_interval_seconds,
            observer_factory=self._observer_factory,
        )

    def restore(self, project_id: str | None = None) -> list[ProjectCoordinator]:
        """Start one coordinator per persisted project with an enabled repository."""
        repositories = self.store.load_watched_repositories(project_id)
        started: list[ProjectCoordinator] = []
        for pid, group in groupby(repositories, key=lambda r: r.project_id):
            repos = list(group)
            if pid in self.coordinators or not any(r.enabled for r in repos):
                continue
            coordinator = self._coordinator(pid)
            coordinator.start(repos)
            self.coordinators[pid] = coordinator
            started.append(coordinator)
        logger.info("Restored %d project(s)", len(started))
        return started

    def stop(self) -> None:
        coordinators = list(self.coordinators.values())
        self.coordinators.clear()
        for coordinator in coordinators:
            coordinator.stop()

    def add_repository(
        self,
        path: Path,
        project_id: str,
        repository_id: str | None = None,
        enabled: bool = True,
    ) -> WatchedRepository:
        """Register a repository, persisting it and watching it if its project is live."""
        if not project_id.strip():
            raise InvalidArgument("project id must not be empty")
        path = path.expanduser().resolve()
        if not git_ops.is_git_repository(self.runner, path):
            raise InvalidArgument(f"{path} is not a git repository")
        root = git_ops.repository_root(self.runner, path)
        repo = WatchedRepository(
            id=repository_id or repository_id_for(root),
            project_id=project_id,
            path=root,
            enabled=enabled,
        )
        existing = self.store.get_repository(repo.id)
        if existing is not None and existing.project_id != project_id:
            raise InvalidArgument(
                f"Repository {repo.id} is already registered in project {existing.project_id}"
            )
        self.store.upsert_repository(repo)
        coordinator = self.coordinators.get(project_id)
        if coordinator is not None:
            if existing is not None:
                coordinator.update_repository(repo.id, enabled=enabled, path=root)
            else:
                coordinator.add_repository(repo)
        return repo

    def remove_repository(self, repository_id: str) -> bool:
        stored = self.store.get_repository(repository_id)
        if stored is None:
            return False
        coordinator = self.coordinators.get(stored.project_id)
        if coordinator is not None:
            coordinator.remove_repository(repository_id)
        return self.store.remove_repository(repository_id)

    def set_enabled(self, repository_id: str, enabled: bool) -> bool:
        stored = self.store.get_repository(repository_id)
        if stored is None:
            return False
        self.store.set_enabled(repository_id, enabled)
        coordinator = self.coordinators.get(stored.project_id)
        if coordinator is not None:
            coordinator.update_repository(repository_id, enabled=enabled)
        return True

    def snapshot(self, path: Path, fetch: bool = False, files: bool = False) -> dict[str, Any]:
        """Read one snapshot of a working copy as a JSON-ready dict."""
        path = path.expanduser().resolve()
        snapshot = self.reader.read(path, include_remote_refresh=fetch)
        data = snapshot.to_dict()
        if files:
            data["files"] = [
                {
                    "path": change.path,
                    "change_type": change.change_type.value,
                    "lines_added": change.lines_added,
                    "lines_removed": change.lines_removed,
                }
                for change in self.reader.file_changes(path, snapshot.status)
            ]
        return data

    def poll(self, project_id: str | None = None) -> list[ActivityEvent]:
        """Run a single remote poll against the persisted baselines, without watching."""
        repositories = self.store.load_watched_repositories(project_id)
        events: list[ActivityEvent] = []
        for pid, group in groupby(repositories, key=lambda r: r.project_id):
            repos = [r for r in group if r.enabled]
            for repo in repos:
                if repo.last_snapshot is None:
                    self._seed(repo)
            coordinator = self._coordinator(pid)
            coordinator.start(repos, watch=False)
            try:
                events.extend(coordinator.poll_once())
            finally:
                coordinator.stop()
        return events

    def _seed(self, repo: WatchedRepository) -> None:
        try:
            repo.last_snapshot = self.reader.read(repo.path)
        except CommandError as exc:
            logger.warning("Cannot read %s at %s: %s", repo.id, repo.path, exc)
            return
        self.store.record_snapshot(repo.id, repo.last_snapshot)
