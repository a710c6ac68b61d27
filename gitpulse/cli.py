import json
import threading
from pathlib import Path
from typing import NoReturn

import click

from gitpulse.app import App
from gitpulse.git_ops import GitPulseError
from gitpulse.logging_setup import configure_logging
from gitpulse.settings import Settings, load_settings
from gitpulse.sinks import EchoSink


def _fail(message: str) -> NoReturn:
    click.echo(f"gitpulse: {message}", err=True)
    raise SystemExit(1)


def _app(ctx: click.Context, as_json: bool = False) -> App:
    settings: Settings = ctx.obj["settings"]
    return App(settings, EchoSink(as_json=as_json))


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr.")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for the database, log and settings.json.",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, data_dir: Path | None) -> None:
    """gitpulse: watch git repositories and report activity."""
    try:
        settings = load_settings(data_dir)
    except GitPulseError as exc:
        _fail(str(exc))
    configure_logging(settings, verbose=verbose)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command()
@click.option("--project", "project_id", default=None, help="Only watch this project.")
@click.option("--json", "as_json", is_flag=True, help="Print events as JSON lines.")
@click.pass_context
def watch(ctx: click.Context, project_id: str | None, as_json: bool) -> None:
    """Watch registered repositories until interrupted."""
    app = _app(ctx, as_json=as_json)
    coordinators = app.restore(project_id)
    if not coordinators:
        _fail("no enabled repositories registered; use `gitpulse repo add`")
    done = threading.Event()
    try:
        while not done.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        app.stop()


@main.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=Path), default=".")
@click.option("--fetch", is_flag=True, help="Fetch from remotes before reading.")
@click.option("--files", is_flag=True, help="Include per-file line statistics.")
@click.pass_context
def snapshot(ctx: click.Context, path: Path, fetch: bool, files: bool) -> None:
    """Print the current state of a working copy as JSON."""
    app = _app(ctx)
    try:
        data = app.snapshot(path, fetch=fetch, files=files)
    except GitPulseError as exc:
        _fail(str(exc))
    click.echo(json.dumps(data, indent=2, sort_keys=True))


@main.command()
@click.option("--project", "project_id", default=None, help="Only poll this project.")
@click.option("--json", "as_json", is_flag=True, help="Print events as JSON lines.")
@click.pass_context
def poll(ctx: click.Context, project_id: str | None, as_json: bool) -> None:
    """Fetch remotes once and report remote activity since the last poll."""
    app = _app(ctx, as_json=as_json)
    events = app.poll(project_id)
    if not events and not as_json:
        click.echo("No remote activity.")


@main.group()
def repo() -> None:
    """Manage registered repositories."""


@repo.command("add")
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--project", "project_id", required=True, help="Project the repository belongs to.")
@click.option("--id", "repository_id", default=None, help="Repository id (default: derived from path).")
@click.option("--disabled", is_flag=True, help="Register without watching.")
@click.pass_context
def repo_add(
    ctx: click.Context, path: Path, project_id: str, repository_id: str | None, disabled: bool
) -> None:
    """Register a repository under a project."""
    app = _app(ctx)
    try:
        repository = app.add_repository(path, project_id, repository_id, enabled=not disabled)
    except GitPulseError as exc:
        _fail(str(exc))
    click.echo(f"{repository.id}\t{repository.project_id}\t{repository.path}")


@repo.command("remove")
@click.argument("repository_id")
@click.pass_context
def repo_remove(ctx: click.Context, repository_id: str) -> None:
    """Unregister a repository."""
    if not _app(ctx).remove_repository(repository_id):
        _fail(f"unknown repository '{repository_id}'")


@repo.command("list")
@click.option("--project", "project_id", default=None, help="Only list this project.")
@click.pass_context
def repo_list(ctx: click.Context, project_id: str | None) -> None:
    """List registered repositories."""
    app = _app(ctx)
    for stored in app.store.list_repositories(project_id):
        state = "enabled" if stored.enabled else "disabled"
        branch = stored.last_snapshot.branch if stored.last_snapshot else "-"
        click.echo(f"{stored.id}\t{stored.project_id}\t{state}\t{branch}\t{stored.path}")


@repo.command("enable")
@click.argument("repository_id")
@click.pass_context
def repo_enable(ctx: click.Context, repository_id: str) -> None:
    """Resume watching a repository."""
    if not _app(ctx).set_enabled(repository_id, True):
        _fail(f"unknown repository '{repository_id}'")


@repo.command("disable")
@click.argument("repository_id")
@click.pass_context
def repo_disable(ctx: click.Context, repository_id: str) -> None:
    """Stop watching a repository without unregistering it."""
    if not _app(ctx).set_enabled(repository_id, False):
        _fail(f"unknown repository '{repository_id}'")


if __name__ == "__main__":
    main()
