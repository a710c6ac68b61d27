"""Git subprocess operations."""

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

logger = logging.getLogger(__name__)

GIT_COMMAND = "git"
DEFAULT_TIMEOUT = 30.0
LIVENESS_TIMEOUT = 5.0
FETCH_TIMEOUT = 60.0

# Status reads must never rewrite .git/index, which is itself watched.
_GIT_ENV = {
    "GIT_OPTIONAL_LOCKS": "0",
    "GIT_TERMINAL_PROMPT": "0",
    "LC_ALL": "C",
}


class GitPulseError(Exception):
    """Base class for gitpulse errors."""


class InvalidArgument(GitPulseError, ValueError):
    """A malformed call into the runner (a programming error)."""


class CommandError(GitPulseError):
    """A git invocation did not produce usable output."""

    def __init__(self, cmd: Sequence[str], message: str) -> None:
        self.cmd = list(cmd)
        super().__init__(message)

    @property
    def command(self) -> str:
        return " ".join([GIT_COMMAND, *self.cmd])


class CommandTimeout(CommandError):
    """Git command exceeded its timeout and was killed."""

    def __init__(self, cmd: Sequence[str], timeout: float) -> None:
        self.timeout = timeout
        super().__init__(cmd, f"git {' '.join(cmd)}: timed out after {timeout:g}s")


class CommandFailed(CommandError):
    """Git command exited non-zero or could not be spawned."""

    def __init__(self, cmd: Sequence[str], exit_code: int | None, stderr: str) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr or "unknown error"
        super().__init__(cmd, f"git {' '.join(cmd)}: exit {exit_code}: {detail}")


@dataclass(frozen=True)
class CommandResult:
    """Captured output of a successful git command."""

    stdout: str
    stderr: str


class GitRunner:
    """Runs git with an argument vector, never through a shell."""

    def __init__(self, executable: str = GIT_COMMAND, default_timeout: float = DEFAULT_TIMEOUT) -> None:
        self.executable = executable
        self.default_timeout = default_timeout

    def run(
        self, args: Sequence[str], cwd: Path | str, timeout: float | None = None
    ) -> CommandResult:
        """Run a git command and return its output."""
        _validate(args, cwd)
        effective_timeout = self.default_timeout if timeout is None else timeout
        logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
        try:
            result = subprocess.run(
                [self.executable, *args],
                cwd=str(cwd),
                check=False,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env={**os.environ, **_GIT_ENV},
                timeout=effective_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeout(args, effective_timeout) from exc
        except OSError as exc:
            raise CommandFailed(args, None, str(exc)) from exc
        if result.returncode != 0:
            raise CommandFailed(args, result.returncode, result.stderr.strip())
        return CommandResult(stdout=result.stdout.rstrip(), stderr=result.stderr.strip())


def _validate(args: Sequence[str], cwd: Path | str) -> None:
    if not isinstance(args, (list, tuple)) or not args:
        raise InvalidArgument("git arguments must be a non-empty list of strings")
    if any(not isinstance(arg, str) for arg in args):
        raise InvalidArgument("git arguments must all be strings")
    if not isinstance(cwd, (str, Path)) or not str(cwd):
        raise InvalidArgument("working directory must be a non-empty path")


def is_git_repository(runner: GitRunner, path: Path) -> bool:
    """Check whether a directory is inside a git repository."""
    try:
        runner.run(["rev-parse", "--git-dir"], path, timeout=LIVENESS_TIMEOUT)
    except (CommandError, InvalidArgument):
        return False
    return True


def repository_root(runner: GitRunner, path: Path) -> Path:
    """Get the top-level directory of the repository containing path."""
    out = runner.run(["rev-parse", "--show-toplevel"], path, timeout=LIVENESS_TIMEOUT).stdout
    return Path(out)


def git_dir(runner: GitRunner, path: Path) -> Path:
    """Get the absolute git metadata directory for a working copy."""
    out = runner.run(
        ["rev-parse", "--absolute-git-dir"], path, timeout=LIVENESS_TIMEOUT
    ).stdout
    return Path(out)


def parse_lines(output: str) -> list[str]:
    """Split command output into stripped, non-empty lines."""
    return [line.strip() for line in output.splitlines() if line.strip()]


def parse_remote_urls(output: str) -> dict[str, str]:
    """Parse `git remote -v` into a remote name to fetch URL mapping."""
    remotes: dict[str, str] = {}
    for line in output.splitlines():
        match = re.match(r"^(\S+)\s+(.+?)\s+\(fetch\)$", line.strip())
        if match:
            remotes[match.group(1)] = match.group(2)
    return remotes


def parse_ahead_behind(output: str) -> tuple[int, int]:
    """Parse `rev-list --left-right --count` output into (ahead, behind)."""
    parts = output.split()
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        return 0, 0
    return int(parts[0]), int(parts[1])


@dataclass(frozen=True)
class ReflogEntry:
    """One reflog line: when the ref moved, why, and to what."""

    timestamp: int
    subject: str
    commit: str


_SELECTOR_TS = re.compile(r"@\{(\d+)\}$")


def parse_reflog(output: str) -> list[ReflogEntry]:
    """Parse `log -g --date=unix --format=%gd%x1f%gs%x1f%H` output."""
    entries: list[ReflogEntry] = []
    for line in output.splitlines():
        parts = line.split("\x1f")
        if len(parts) != 3:
            continue
        selector, subject, commit = parts
        match = _SELECTOR_TS.search(selector.strip())
        if not match:
            continue
        entries.append(
            ReflogEntry(timestamp=int(match.group(1)), subject=subject.strip(), commit=commit.strip())
        )
    return entries


def parse_numstat(output: str) -> tuple[int, int]:
    """Sum added and deleted line counts from `diff --numstat` output."""
    additions = 0
    deletions = 0
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        if parts[0].isdigit():
            additions += int(parts[0])
        if parts[1].isdigit():
            deletions += int(parts[1])
    return additions, deletions

