"""
Debounce/batch engine.

Accepts change events for the tracked file type and closes a batch when
either threshold fires:

- the wait duration has elapsed since the last accepted event, or
- the number of accepted events reached the upper limit.

The time threshold is polled, so a batch that goes quiet still flushes
without another event arriving.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from csvferry.exceptions import WatchError
from csvferry.utils.logging import get_logger
from csvferry.watch.events import ChangeEvent, ChangeKind, SourceClosed

logger = get_logger("csvferry.batching")

ACCEPTED_KINDS = frozenset({ChangeKind.CREATED, ChangeKind.MODIFIED})

BatchCallback = Callable[["Batch"], Awaitable[Any] | None]


class EngineState(str, Enum):
    """Batch engine states."""

    IDLE = "idle"
    ACCUMULATING = "accumulating"


@dataclass
class PendingBatch:
    """Accepted events awaiting a flush. Owned by a single BatchEngine."""

    events: list[ChangeEvent] = field(default_factory=list)
    last_accepted_at: float | None = None

    def __len__(self) -> int:
        return len(self.events)


@dataclass(frozen=True)
class Batch:
    """A flushed batch of distinct file paths, in event order."""

    batch_id: str
    paths: tuple[Path, ...]
    event_count: int
    flushed_at: float

    def __len__(self) -> int:
        return len(self.paths)


def deduplicate(events: list[ChangeEvent]) -> tuple[Path, ...]:
    """
    Collapse repeated paths, keeping each path's latest event.

    A path appears at the position of its latest event, so the batch order is
    the order in which files last changed.
    """
    latest: dict[Path, int] = {}
    for index, event in enumerate(events):
        latest[event.path] = index
    return tuple(path for path, _ in sorted(latest.items(), key=lambda item: item[1]))


class BatchEngine:
    """
    Two-threshold debounce state machine.

    The synchronous methods (``accept``, ``due``, ``flush``) hold all the
    decision logic and take an injectable clock; ``run`` drives them from an
    asyncio channel.

    Examples:
        >>> engine = BatchEngine(wait_seconds=5, upper_limit=100)
        >>> await engine.run(channel, on_batch=handle_batch)
    """

    def __init__(
        self,
        *,
        wait_seconds: float,
        upper_limit: int,
        extension: str = ".csv",
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if upper_limit < 1:
            raise ValueError("upper_limit must be >= 1")
        if wait_seconds < 0:
            raise ValueError("wait_seconds must be >= 0")
        self.wait_seconds = wait_seconds
        self.upper_limit = upper_limit
        self.extension = extension.lower()
        self.poll_interval = poll_interval
        self._clock = clock
        self._pending = PendingBatch()

    @property
    def state(self) -> EngineState:
        return EngineState.ACCUMULATING if self._pending.events else EngineState.IDLE

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def accept(self, event: ChangeEvent) -> bool:
        """
        Offer an event to the pending batch.

        Returns:
            True if the event was accepted, False if it was filtered out
        """
        if event.path.suffix.lower() != self.extension:
            return False
        if event.kind not in ACCEPTED_KINDS:
            return False
        self._pending.events.append(event)
        self._pending.last_accepted_at = self._clock()
        logger.debug(f"Accepted {event.kind.value} event for {event.path} ({len(self._pending)} pending)")
        return True

    def due(self, now: float | None = None) -> bool:
        """True when a non-empty batch has hit either threshold."""
        if not self._pending.events:
            return False
        if len(self._pending) >= self.upper_limit:
            return True
        now = self._clock() if now is None else now
        return now - self._pending.last_accepted_at >= self.wait_seconds

    def time_until_due(self, now: float | None = None) -> float | None:
        """Seconds until the time threshold fires, or None while idle."""
        if not self._pending.events:
            return None
        now = self._clock() if now is None else now
        return max(0.0, self.wait_seconds - (now - self._pending.last_accepted_at))

    def flush(self) -> Batch | None:
        """Emit the pending batch (deduplicated) and return to idle."""
        if not self._pending.events:
            return None
        events = self._pending.events
        self._pending = PendingBatch()
        batch = Batch(
            batch_id=uuid.uuid4().hex,
            paths=deduplicate(events),
            event_count=len(events),
            flushed_at=self._clock(),
        )
        logger.info(f"Flushing batch {batch.batch_id}: {len(batch.paths)} file(s) from {batch.event_count} event(s)")
        return batch

    async def run(self, channel: asyncio.Queue, on_batch: BatchCallback) -> None:
        """
        Consume the channel until the source closes.

        Waits for either the next event or the remaining wait time, whichever
        comes first. ``on_batch`` may be sync or async; it should hand the
        batch off quickly, since accumulation pauses while it runs.

        Raises:
            WatchError: When the source closes, after flushing any pending batch
        """
        while True:
            remaining = self.time_until_due()
            timeout = None if remaining is None else min(remaining, self.poll_interval)
            try:
                item = await asyncio.wait_for(channel.get(), timeout=timeout)
            except asyncio.TimeoutError:
                item = None

            if isinstance(item, SourceClosed):
                batch = self.flush()
                if batch is not None:
                    await _call(on_batch, batch)
                if item.error is not None:
                    raise WatchError(f"Change event source failed: {item.error}") from item.error
                raise WatchError("Change event source terminated")

            if item is not None:
                self.accept(item)

            if self.due():
                batch = self.flush()
                if batch is not None:
                    await _call(on_batch, batch)


async def _call(callback: BatchCallback, batch: Batch) -> None:
    result = callback(batch)
    # Only coroutines are awaited; a returned Task keeps running on its own
    if inspect.iscoroutine(result):
        await result
