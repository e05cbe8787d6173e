"""
End-to-end tests: watch channel -> batch -> manifests -> dispatch.
"""

import asyncio
import os
from pathlib import Path

import pytest
from watchdog.events import FileMovedEvent

from csvferry.batching import Batch, BatchEngine
from csvferry.config import Settings
from csvferry.exceptions import WatchError
from csvferry.manifest import ManifestBuilder, metadata_path_for
from csvferry.pipeline import Pipeline, WatchService, retry_policy_from_settings
from csvferry.templates import build_index
from csvferry.transfer.dispatch import DispatchEngine
from csvferry.transfer.planner import RemoteTarget
from csvferry.transfer.retry import RetryManager, RetryPolicy
from csvferry.transfer.runner import TransferResult
from csvferry.upload_log import OUTCOME_SUCCEEDED, OUTCOME_UNMATCHED, UploadLog
from csvferry.watch.events import ChangeEvent, ChangeKind, SourceClosed
from csvferry.watch.source import QueueingEventHandler, WatchdogEventSource


class RecordingRunner:
    def __init__(self):
        self.calls = []

    async def run(self, invocation):
        self.calls.append(invocation)
        return TransferResult(0)


class GatedRunner:
    """Blocks every transfer until the test opens the gate."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.started = []

    async def run(self, invocation):
        self.started.append(invocation)
        await self.gate.wait()
        return TransferResult(0)


class LiveSource:
    """Channel the test feeds while the service runs."""

    def __init__(self):
        self.channel: asyncio.Queue = asyncio.Queue()

    async def start(self):
        return self.channel

    async def stop(self):
        return None


class FakeSource:
    """Pre-filled channel standing in for the watchdog source."""

    def __init__(self, items):
        self.items = items
        self.stopped = False

    async def start(self):
        channel: asyncio.Queue = asyncio.Queue()
        for item in self.items:
            channel.put_nowait(item)
        return channel

    async def stop(self):
        self.stopped = True


async def no_sleep(delay):
    return None


@pytest.fixture
def project(tmp_path):
    templates = tmp_path / "templates"
    incoming = tmp_path / "incoming"
    templates.mkdir()
    incoming.mkdir()
    (templates / "anthropometry_template.csv").write_text("id,height,weight\n")
    (templates / "vitals_template.csv").write_text("id,hr\n")
    for i in range(3):
        (incoming / f"a{i}.csv").write_text(f"id,height,weight\n{i},180,80\n")
    (incoming / "stray.csv").write_text("something,else\n")
    return tmp_path


def event(path: Path, kind=ChangeKind.CREATED) -> ChangeEvent:
    return ChangeEvent(path=path, kind=kind, observed_at=0.0)


def make_pipeline(project, runner, log):
    index = build_index(project / "templates")
    builder = ManifestBuilder(index, upload_log=log, identity=lambda p: "alice")
    dispatcher = DispatchEngine(
        RemoteTarget(user="bob", host="ingest", base_dir="/srv"),
        runner=runner,
        policy=RetryPolicy(initial_delay=0.0),
        retry_manager=RetryManager(sleep=no_sleep),
        upload_log=log,
    )
    return Pipeline(builder, dispatcher)


class TestPipeline:
    @pytest.mark.asyncio
    async def test_batch_with_matched_and_unmatched_files(self, project):
        incoming = project / "incoming"
        log = UploadLog(incoming / "upload.log")
        runner = RecordingRunner()
        paths = tuple(incoming / name for name in ("a0.csv", "stray.csv", "a1.csv", "a2.csv"))
        batch = Batch(batch_id="b1", paths=paths, event_count=4, flushed_at=0.0)

        outcomes = await make_pipeline(project, runner, log).process(batch)

        assert [(o.table_name, o.succeeded) for o in outcomes] == [("anthropometry", True)]
        (invocation,) = runner.calls
        assert list(invocation.sources) == [incoming / "a0.csv", incoming / "a1.csv", incoming / "a2.csv"]
        assert invocation.destination == "bob@ingest:/srv/anthropometry"
        assert all(metadata_path_for(p).exists() for p in invocation.sources)

        outcomes_logged = sorted(r.outcome for r in log.read())
        assert outcomes_logged == [OUTCOME_SUCCEEDED, OUTCOME_UNMATCHED]

    @pytest.mark.asyncio
    async def test_nothing_matched(self, project):
        incoming = project / "incoming"
        runner = RecordingRunner()
        batch = Batch(batch_id="b1", paths=(incoming / "stray.csv",), event_count=1, flushed_at=0.0)
        outcomes = await make_pipeline(project, runner, UploadLog(incoming / "upload.log")).process(batch)
        assert outcomes == []
        assert runner.calls == []


class TestWatchService:
    @pytest.mark.asyncio
    async def test_source_close_flushes_and_drains(self, project):
        incoming = project / "incoming"
        runner = RecordingRunner()
        items = [
            event(incoming / "a0.csv"),
            event(incoming / "a0.csv", ChangeKind.MODIFIED),
            event(incoming / "a1.csv"),
            event(incoming / "notes.txt"),
            SourceClosed(),
        ]
        source = FakeSource(items)
        engine = BatchEngine(wait_seconds=60, upper_limit=100)
        service = WatchService(source, engine, make_pipeline(project, runner, UploadLog(incoming / "upload.log")))

        with pytest.raises(WatchError):
            await asyncio.wait_for(service.run(), timeout=5.0)

        assert source.stopped is True
        (invocation,) = runner.calls
        assert list(invocation.sources) == [incoming / "a0.csv", incoming / "a1.csv"]

    @pytest.mark.asyncio
    async def test_count_threshold_splits_batches(self, project):
        incoming = project / "incoming"
        runner = RecordingRunner()
        items = [event(incoming / f"a{i}.csv") for i in range(3)] + [SourceClosed()]
        engine = BatchEngine(wait_seconds=60, upper_limit=2)
        service = WatchService(
            FakeSource(items), engine, make_pipeline(project, runner, UploadLog(incoming / "upload.log"))
        )

        with pytest.raises(WatchError):
            await asyncio.wait_for(service.run(), timeout=5.0)

        assert sorted(len(call.sources) for call in runner.calls) == [1, 2]

    @pytest.mark.asyncio
    async def test_accumulation_continues_while_dispatching(self, project):
        incoming = project / "incoming"
        runner = GatedRunner()
        source = LiveSource()
        engine = BatchEngine(wait_seconds=60, upper_limit=1)
        service = WatchService(source, engine, make_pipeline(project, runner, UploadLog(incoming / "upload.log")))
        run = asyncio.create_task(service.run())

        async def wait_for_transfers(count):
            while len(runner.started) < count:
                await asyncio.sleep(0.01)

        try:
            await source.channel.put(event(incoming / "a0.csv"))
            await asyncio.wait_for(wait_for_transfers(1), timeout=5.0)

            # First transfer is still blocked; the next event must be batched anyway
            await source.channel.put(event(incoming / "a1.csv"))
            await asyncio.wait_for(wait_for_transfers(2), timeout=5.0)
            assert source.channel.empty()
            assert engine.pending_count == 0
        finally:
            runner.gate.set()
            await source.channel.put(SourceClosed())
            with pytest.raises(WatchError):
                await asyncio.wait_for(run, timeout=5.0)

        assert [list(call.sources) for call in runner.started] == [[incoming / "a0.csv"], [incoming / "a1.csv"]]

    def test_rename_does_not_reenter_batch(self, project):
        incoming = project / "incoming"
        builder = ManifestBuilder(
            build_index(project / "templates"), rename_format="%Y%m%d%H%M%S", identity=lambda p: "alice"
        )
        original = incoming / "a0.csv"
        manifests = builder.build(Batch(batch_id="b1", paths=(original,), event_count=1, flushed_at=0.0))
        (renamed,) = manifests["anthropometry"].source_files

        events = []
        handler = QueueingEventHandler(events.append)
        handler.dispatch(FileMovedEvent(os.fspath(original), os.fspath(renamed)))
        engine = BatchEngine(wait_seconds=0, upper_limit=1)

        assert [e.path for e in events] == [renamed]
        assert engine.accept(events[0]) is False
        assert engine.flush() is None

    def test_from_settings_wiring(self, project):
        settings = Settings(
            source_dir=project / "incoming",
            template_dir=project / "templates",
            remote_host="ingest",
            remote_user="bob",
            remote_dir="/srv",
            wait_seconds=2.5,
            upper_limit=7,
            polling=True,
            retry_backoff="exponential",
            arg_budget=65536,
        )
        runner = RecordingRunner()
        service = WatchService.from_settings(settings, runner=runner)

        assert isinstance(service.source, WatchdogEventSource)
        assert service.source.polling is True
        assert service.engine.wait_seconds == 2.5
        assert service.engine.upper_limit == 7
        dispatcher = service.pipeline.dispatcher
        assert dispatcher.runner is runner
        assert dispatcher.arg_budget == 65536
        assert dispatcher.delete_after_upload is True
        assert dispatcher.upload_log.path == project / "incoming" / "upload.log"
        assert sorted(service.pipeline.builder.index.tables) == ["anthropometry", "vitals"]


class TestRetryPolicyFromSettings:
    def _settings(self, **kwargs):
        return Settings(source_dir=Path("/in"), template_dir=Path("/t"), remote_host="h", remote_user="u", remote_dir="/d", **kwargs)

    def test_fixed(self):
        policy = retry_policy_from_settings(self._settings(max_attempts=4, retry_delay_seconds=2.0))
        assert policy.max_attempts == 4
        assert [policy.get_delay(n) for n in range(3)] == [2.0, 2.0, 2.0]

    def test_exponential(self):
        policy = retry_policy_from_settings(
            self._settings(retry_backoff="exponential", retry_delay_seconds=1.0, retry_max_delay_seconds=3.0)
        )
        assert [policy.get_delay(n) for n in range(4)] == [1.0, 2.0, 3.0, 3.0]
