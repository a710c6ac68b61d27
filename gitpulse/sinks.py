"""Event sinks: where classified activity events are delivered."""

import json
import logging
import queue
import threading
from collections.abc import Callable, Iterable
from typing import Protocol

import click

from gitpulse.models import (
    ActivityEvent,
    ActivityType,
    BranchCreated,
    BranchSwitch,
    Commit,
    Merge,
    Push,
    RemoteUpdate,
    WorktreeChange,
)

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Receives activity events. `emit` must not block."""

    def emit(self, event: ActivityEvent) -> None: ...


def safe_emit(sink: EventSink, event: ActivityEvent) -> None:
    """Deliver an event; a failing sink is logged and never propagates."""
    try:
        sink.emit(event)
    except Exception:
        logger.exception("Sink %r failed to accept %s event", sink, event.type.value)


class CallbackSink:
    """Forwards each event to a plain function."""

    def __init__(self, callback: Callable[[ActivityEvent], None]) -> None:
        self.callback = callback

    def emit(self, event: ActivityEvent) -> None:
        self.callback(event)


class QueueSink:
    """Buffers events for a consumer thread; drops events when the queue is full."""

    def __init__(self, maxsize: int = 1000) -> None:
        self.queue: queue.Queue[ActivityEvent] = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self.dropped = 0

    def emit(self, event: ActivityEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            with self._lock:
                self.dropped += 1
            logger.warning("Event queue full, dropped %s event", event.type.value)

    def drain(self) -> list[ActivityEvent]:
        events: list[ActivityEvent] = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events


class FanoutSink:
    """Delivers each event to several sinks, isolating their failures."""

    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self.sinks = list(sinks)

    def emit(self, event: ActivityEvent) -> None:
        for sink in self.sinks:
            safe_emit(sink, event)


def format_event(event: ActivityEvent) -> str:
    """Render an event as one human-readable line."""
    d = event.details
    if isinstance(d, BranchCreated):
        text = f"created {d.scope.value} branch {d.name}"
    elif isinstance(d, BranchSwitch):
        text = f"switched {d.from_branch} -> {d.to_branch}"
    elif isinstance(d, Commit):
        text = f"commit {d.head[:7]} on {d.branch} by {d.author}: {d.subject}"
    elif isinstance(d, Merge):
        text = f"merge {d.head[:7]} on {d.branch} ({d.parents_count} parents)"
    elif isinstance(d, Push):
        text = f"pushed {d.head[:7]} on {d.branch}"
    elif isinstance(d, RemoteUpdate):
        text = f"{d.branch}: ahead {d.ahead}, behind {d.behind}"
    elif isinstance(d, WorktreeChange):
        first, _, rest = d.summary.partition("\n")
        text = f"worktree: {first}" + (" ..." if rest else "")
    else:
        text = f"error: {d.message}"
    stamp = event.timestamp.strftime("%H:%M:%S")
    return f"{stamp} [{event.project_id}/{event.repository_id}] {event.type.value} {text}"


class EchoSink:
    """Writes events to stdout via click, as text lines or JSON lines."""

    def __init__(self, as_json: bool = False) -> None:
        self.as_json = as_json
        self._lock = threading.Lock()

    def emit(self, event: ActivityEvent) -> None:
        if self.as_json:
            line = json.dumps(event.to_dict(), sort_keys=True)
        else:
            line = format_event(event)
        with self._lock:
            click.echo(line, err=event.type is ActivityType.ERROR and not self.as_json)
