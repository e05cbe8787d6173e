"""
watchdog-backed change event source.

The observer runs in its own thread; events are handed to the asyncio side
through a bounded queue, so a stalled consumer applies backpressure to the
observer instead of growing memory without limit.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from csvferry.exceptions import WatchError
from csvferry.utils.logging import get_logger
from csvferry.watch.events import ChangeEvent, ChangeKind, SourceClosed

logger = get_logger("csvferry.watch.source")

ChannelItem = ChangeEvent | SourceClosed


class QueueingEventHandler(FileSystemEventHandler):
    """Translate watchdog events into ChangeEvents and push them onto the channel."""

    def __init__(
        self,
        put: Callable[[ChangeEvent], None],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self._put = put
        self._clock = clock

    def on_created(self, event: FileSystemEvent) -> None:
        self._emit(event.src_path, ChangeKind.CREATED, event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._emit(event.src_path, ChangeKind.MODIFIED, event)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Renames carry no new content; this also keeps timestamp renames made
        # by the manifest builder from re-entering the next batch
        self._emit(event.dest_path, ChangeKind.OTHER, event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._emit(event.src_path, ChangeKind.OTHER, event)

    def _emit(self, raw_path: Any, kind: ChangeKind, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = Path(os.fsdecode(raw_path))
        self._put(ChangeEvent(path=path, kind=kind, observed_at=self._clock()))


class WatchdogEventSource:
    """
    Recursive watcher over one root directory.

    Usage:
        source = WatchdogEventSource(root)
        channel = await source.start()
        ...                      # consume channel items
        await source.stop()

    The root is resolved before scheduling, so a symlinked root is watched at
    its target. ``polling=True`` switches to watchdog's PollingObserver, which
    stats through symlinks and works on network mounts without inotify.
    """

    def __init__(
        self,
        root: Path,
        *,
        polling: bool = False,
        queue_size: int = 1000,
        health_interval: float = 1.0,
        observer_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.root = Path(root)
        self.polling = polling
        self.queue_size = queue_size
        self.health_interval = health_interval
        self._observer_factory = observer_factory or (PollingObserver if polling else Observer)
        self._observer: Any = None
        self._channel: asyncio.Queue[ChannelItem] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._monitor: asyncio.Task | None = None
        self._stopping = False

    @property
    def channel(self) -> asyncio.Queue[ChannelItem]:
        if self._channel is None:
            raise RuntimeError("Event source not started")
        return self._channel

    async def start(self) -> asyncio.Queue[ChannelItem]:
        """
        Start the observer thread and return the bounded event channel.

        Raises:
            WatchError: If the root is missing or the observer cannot start
        """
        root = self.root.expanduser().resolve()
        if not root.is_dir():
            raise WatchError(f"Watch root is not a directory: {root}", details={"root": str(root)})

        self._loop = asyncio.get_running_loop()
        self._channel = asyncio.Queue(maxsize=self.queue_size)
        self._stopping = False

        observer = self._observer_factory()
        try:
            observer.schedule(QueueingEventHandler(self._put_threadsafe), str(root), recursive=True)
            observer.start()
        except OSError as e:
            raise WatchError(f"Failed to watch directory {root}: {e}", details={"root": str(root)}) from e
        self._observer = observer
        self._monitor = asyncio.create_task(self._watch_health(), name="csvferry-watch-health")

        kind = "polling" if self.polling else "native"
        logger.info(f"Watching {root} recursively ({kind} observer)")
        return self._channel

    async def stop(self) -> None:
        """Stop the observer and close the channel."""
        self._stopping = True
        if self._monitor is not None:
            self._monitor.cancel()
            await asyncio.gather(self._monitor, return_exceptions=True)
            self._monitor = None
        if self._observer is not None:
            observer = self._observer
            self._observer = None
            observer.stop()
            await asyncio.to_thread(observer.join, 5.0)
        if self._channel is not None:
            self._close_channel(SourceClosed())

    def _put_threadsafe(self, event: ChangeEvent) -> None:
        """Called on the observer thread; blocks while the channel is full."""
        loop = self._loop
        if loop is None or loop.is_closed() or self._stopping:
            return
        future = asyncio.run_coroutine_threadsafe(self.channel.put(event), loop)
        future.result()

    async def _watch_health(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self.health_interval)
            observer = self._observer
            if observer is not None and not observer.is_alive() and not self._stopping:
                logger.error(f"Observer thread for {self.root} died")
                self._close_channel(SourceClosed(WatchError(f"Observer for {self.root} stopped unexpectedly")))
                return

    def _close_channel(self, item: SourceClosed) -> None:
        channel = self.channel
        # The terminal marker must get through even when the channel is full
        while True:
            try:
                channel.put_nowait(item)
                return
            except asyncio.QueueFull:
                dropped = channel.get_nowait()
                if isinstance(dropped, ChangeEvent):
                    logger.warning(
                        f"Event channel full while closing, dropped {dropped.kind.value} event for {dropped.path}; "
                        "the file will not be batched"
                    )
                else:
                    logger.warning(f"Event channel full while closing, dropped {dropped}")
