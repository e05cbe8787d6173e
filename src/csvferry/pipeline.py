"""
Per-batch pipeline and the long-running watch service.

The batch engine keeps accumulating while earlier batches are matched and
dispatched in background tasks; a flushed batch always runs to completion.
"""

from __future__ import annotations

import asyncio
from typing import Any

from csvferry.batching import Batch, BatchEngine
from csvferry.config.settings import Settings
from csvferry.manifest import ManifestBuilder
from csvferry.templates import TemplateIndex, build_index
from csvferry.transfer.dispatch import DispatchEngine, DispatchOutcome
from csvferry.transfer.planner import RemoteTarget
from csvferry.transfer.retry import RetryPolicy
from csvferry.transfer.runner import TransferRunner
from csvferry.upload_log import UploadLog
from csvferry.utils.logging import get_logger
from csvferry.watch.source import WatchdogEventSource

logger = get_logger("csvferry.pipeline")


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    exponential = settings.retry_backoff == "exponential"
    return RetryPolicy(
        max_attempts=settings.max_attempts,
        initial_delay=settings.retry_delay_seconds,
        max_delay=max(settings.retry_max_delay_seconds, settings.retry_delay_seconds),
        exponential_base=2.0 if exponential else 1.0,
    )


class Pipeline:
    """Match, build manifests and dispatch one flushed batch."""

    def __init__(self, builder: ManifestBuilder, dispatcher: DispatchEngine) -> None:
        self.builder = builder
        self.dispatcher = dispatcher

    async def process(self, batch: Batch) -> list[DispatchOutcome]:
        # Header reads, renames and metadata writes are blocking file I/O
        manifests = await asyncio.to_thread(self.builder.build, batch)
        if not manifests:
            logger.info(f"Batch {batch.batch_id}: no matched files, nothing to transfer")
            return []
        return await self.dispatcher.dispatch_all(manifests, batch.batch_id)


class WatchService:
    """
    Watch -> batch -> match -> dispatch, until the watch breaks.

    Examples:
        >>> service = WatchService.from_settings(settings)
        >>> await service.run()   # raises WatchError when the watcher dies
    """

    def __init__(self, source: Any, engine: BatchEngine, pipeline: Pipeline) -> None:
        self.source = source
        self.engine = engine
        self.pipeline = pipeline
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        index: TemplateIndex | None = None,
        runner: TransferRunner | None = None,
    ) -> WatchService:
        """
        Wire the service from validated settings.

        Raises:
            ConfigurationError: If the template index cannot be built
        """
        if index is None:
            index = build_index(settings.template_dir, settings.template_suffix, settings.extension)
        upload_log = UploadLog(settings.resolved_upload_log_path)

        builder = ManifestBuilder(index, upload_log=upload_log, rename_format=settings.rename_format)
        dispatcher = DispatchEngine(
            RemoteTarget(
                user=settings.remote_user,
                host=settings.remote_host,
                base_dir=settings.remote_dir,
                identity_file=settings.identity_file,
            ),
            runner=runner,
            policy=retry_policy_from_settings(settings),
            arg_budget=settings.arg_budget,
            timeout=settings.timeout_seconds,
            max_workers=settings.max_workers,
            upload_log=upload_log,
            delete_after_upload=settings.delete_after_upload,
        )
        engine = BatchEngine(
            wait_seconds=settings.wait_seconds,
            upper_limit=settings.upper_limit,
            extension=settings.extension,
            poll_interval=settings.poll_interval,
        )
        source = WatchdogEventSource(
            settings.source_dir,
            polling=settings.polling,
            queue_size=settings.queue_size,
        )
        return cls(source, engine, Pipeline(builder, dispatcher))

    async def run(self) -> None:
        """
        Run until the event source closes.

        Raises:
            WatchError: When the watcher cannot start or stops
        """
        channel = await self.source.start()
        try:
            await self.engine.run(channel, self.submit)
        finally:
            await self.source.stop()
            await self.drain()

    def submit(self, batch: Batch) -> None:
        """Process a batch in the background; returns without waiting for it."""
        task = asyncio.create_task(self.pipeline.process(batch), name=f"csvferry-batch-{batch.batch_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_batch_done)

    async def drain(self) -> None:
        """Wait for every in-flight batch to finish."""
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} in-flight batch(es)")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_batch_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"{task.get_name()} failed: {error}", exc_info=error)
