"""
Tests for the dispatch engine.
"""

import asyncio
from pathlib import Path

import pytest

from csvferry.exceptions import TransferError
from csvferry.manifest import TableManifest, metadata_path_for
from csvferry.transfer.dispatch import DispatchEngine
from csvferry.transfer.planner import RemoteTarget, TransferInvocation, argv_size
from csvferry.transfer.retry import RetryManager, RetryPolicy
from csvferry.transfer.runner import TransferResult
from csvferry.upload_log import OUTCOME_FAILED, OUTCOME_SUCCEEDED, UploadLog

TARGET = RemoteTarget(user="bob", host="ingest", base_dir="/srv")


async def no_sleep(delay: float) -> None:
    return None


class ScriptedRunner:
    """Returns scripted exit statuses per table, in call order; extra calls succeed."""

    def __init__(self, script: dict[str, list] | None = None):
        self.script = {table: list(steps) for table, steps in (script or {}).items()}
        self.calls: list[TransferInvocation] = []

    async def run(self, invocation: TransferInvocation) -> TransferResult:
        self.calls.append(invocation)
        steps = self.script.get(invocation.table_name) or []
        step = steps.pop(0) if steps else 0
        if isinstance(step, Exception):
            raise step
        return TransferResult(exit_status=step, stderr="rsync error: some files could not be transferred" if step else "")


class SlowRunner:
    async def run(self, invocation: TransferInvocation) -> TransferResult:
        await asyncio.sleep(10)
        return TransferResult(0)


def manifest_of(tmp_path: Path, table: str, count: int) -> TableManifest:
    manifest = TableManifest(table)
    for i in range(count):
        source = tmp_path / f"{table}_{i}.csv"
        source.write_text("id\n")
        meta = metadata_path_for(source)
        meta.write_text("ts,user,name")
        manifest.add(source, meta)
    return manifest


def two_pair_budget(manifest: TableManifest) -> int:
    fixed = argv_size(
        TransferInvocation(
            table_name=manifest.table_name,
            sources=(),
            metadata=(),
            destination=TARGET.destination(manifest.table_name),
            rsync_path=TARGET.rsync_path(manifest.table_name),
            timeout=1.0,
        ).argv()
    )
    return fixed + 2 * argv_size(manifest.pairs()[0])


def engine(runner, tmp_path, **kwargs) -> DispatchEngine:
    kwargs.setdefault("policy", RetryPolicy(max_attempts=3, initial_delay=0.0))
    return DispatchEngine(
        TARGET,
        runner=runner,
        retry_manager=RetryManager(sleep=no_sleep),
        upload_log=UploadLog(tmp_path / "upload.log"),
        **kwargs,
    )


class TestDispatch:
    """Single-table dispatch with retries."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, tmp_path):
        runner = ScriptedRunner()
        outcome = await engine(runner, tmp_path).dispatch(manifest_of(tmp_path, "vitals", 2), "b1")
        assert outcome.succeeded is True
        assert outcome.attempt_count == 1
        assert outcome.invocation_count == 1
        assert len(runner.calls) == 1

    @pytest.mark.asyncio
    async def test_success_on_third_attempt(self, tmp_path):
        runner = ScriptedRunner({"vitals": [23, 23, 0]})
        dispatcher = engine(runner, tmp_path)

        outcome = await dispatcher.dispatch(manifest_of(tmp_path, "vitals", 1), "b1")

        assert outcome.succeeded is True
        assert outcome.attempt_count == 3
        (record,) = dispatcher.upload_log.read()
        assert record.outcome == OUTCOME_SUCCEEDED
        assert record.attempts == 3
        assert record.files == (str(tmp_path / "vitals_0.csv"),)

    @pytest.mark.asyncio
    async def test_exhausted_records_failure(self, tmp_path):
        runner = ScriptedRunner({"vitals": [23, 23, 23, 0]})
        dispatcher = engine(runner, tmp_path)

        outcome = await dispatcher.dispatch(manifest_of(tmp_path, "vitals", 1), "b1")

        assert outcome.succeeded is False
        assert outcome.attempt_count == 3
        assert len(runner.calls) == 3
        assert "exited with status 23" in outcome.last_error
        (record,) = dispatcher.upload_log.read()
        assert record.outcome == OUTCOME_FAILED
        assert record.attempts == 3
        assert "some files could not be transferred" in record.error

    @pytest.mark.asyncio
    async def test_runner_exception_is_retried(self, tmp_path):
        runner = ScriptedRunner({"vitals": [TransferError("Failed to start rsync"), 0]})
        outcome = await engine(runner, tmp_path).dispatch(manifest_of(tmp_path, "vitals", 1))
        assert outcome.succeeded is True
        assert outcome.attempt_count == 2

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(self, tmp_path):
        dispatcher = engine(SlowRunner(), tmp_path, timeout=0.05, policy=RetryPolicy(max_attempts=2, initial_delay=0.0))
        outcome = await dispatcher.dispatch(manifest_of(tmp_path, "vitals", 1))
        assert outcome.succeeded is False
        assert outcome.attempt_count == 2
        assert "timed out after 0.05s" in outcome.last_error

    @pytest.mark.asyncio
    async def test_split_manifest_all_succeed(self, tmp_path):
        manifest = manifest_of(tmp_path, "vitals", 4)
        runner = ScriptedRunner()
        dispatcher = engine(runner, tmp_path, arg_budget=two_pair_budget(manifest))

        outcome = await dispatcher.dispatch(manifest, "b1")

        assert outcome.invocation_count == 2
        assert outcome.succeeded is True
        assert outcome.attempt_count == 2
        assert [list(call.sources) for call in runner.calls] == [manifest.source_files[:2], manifest.source_files[2:]]

    @pytest.mark.asyncio
    async def test_split_manifest_partial_failure(self, tmp_path, caplog):
        manifest = manifest_of(tmp_path, "vitals", 4)
        budget = two_pair_budget(manifest)
        # First invocation succeeds; the second fails all three attempts
        runner = ScriptedRunner({"vitals": [0, 12, 12, 12]})
        dispatcher = engine(runner, tmp_path, arg_budget=budget)

        outcome = await dispatcher.dispatch(manifest, "b1")

        assert outcome.invocation_count == 2
        assert outcome.succeeded is False
        assert outcome.attempt_count == 4
        assert [r.outcome for r in dispatcher.upload_log.read()] == [OUTCOME_SUCCEEDED, OUTCOME_FAILED]
        assert "1/2 invocation(s) failed" in caplog.text

    @pytest.mark.asyncio
    async def test_delete_after_upload(self, tmp_path):
        manifest = manifest_of(tmp_path, "vitals", 2)
        await engine(ScriptedRunner(), tmp_path, delete_after_upload=True).dispatch(manifest)
        for source, meta in manifest.pairs():
            assert not source.exists()
            assert not meta.exists()

    @pytest.mark.asyncio
    async def test_failed_transfer_keeps_files(self, tmp_path):
        manifest = manifest_of(tmp_path, "vitals", 1)
        runner = ScriptedRunner({"vitals": [1, 1, 1]})
        await engine(runner, tmp_path, delete_after_upload=True).dispatch(manifest)
        assert manifest.source_files[0].exists()


class TestDispatchAll:
    """Tables are independent of each other."""

    @pytest.mark.asyncio
    async def test_failure_of_one_table_does_not_affect_others(self, tmp_path):
        manifests = {
            "vitals": manifest_of(tmp_path, "vitals", 1),
            "anthropometry": manifest_of(tmp_path, "anthropometry", 3),
        }
        runner = ScriptedRunner({"vitals": [1, 1, 1]})

        outcomes = await engine(runner, tmp_path).dispatch_all(manifests, "b1")

        by_table = {o.table_name: o for o in outcomes}
        assert [o.table_name for o in outcomes] == ["vitals", "anthropometry"]
        assert by_table["vitals"].succeeded is False
        assert by_table["anthropometry"].succeeded is True
        assert by_table["anthropometry"].attempt_count == 1

    @pytest.mark.asyncio
    async def test_destination_per_table(self, tmp_path):
        manifests = {"a": manifest_of(tmp_path, "a", 1), "b": manifest_of(tmp_path, "b", 1)}
        runner = ScriptedRunner()
        await engine(runner, tmp_path, max_workers=1).dispatch_all(manifests)
        assert sorted(call.destination for call in runner.calls) == ["bob@ingest:/srv/a", "bob@ingest:/srv/b"]

    @pytest.mark.asyncio
    async def test_unexpected_error_isolated(self, tmp_path, monkeypatch):
        manifests = {"a": manifest_of(tmp_path, "a", 1), "b": manifest_of(tmp_path, "b", 1)}
        dispatcher = engine(ScriptedRunner(), tmp_path)
        original = dispatcher.dispatch

        async def broken(manifest, batch_id=""):
            if manifest.table_name == "a":
                raise RuntimeError("planner exploded")
            return await original(manifest, batch_id)

        monkeypatch.setattr(dispatcher, "dispatch", broken)
        outcomes = await dispatcher.dispatch_all(manifests, "b1")

        assert [o.succeeded for o in outcomes] == [False, True]
        assert outcomes[0].last_error == "planner exploded"
        failed = [r for r in dispatcher.upload_log.read() if r.outcome == OUTCOME_FAILED]
        assert failed[0].table == "a"
