"""
Dispatch engine: table manifests -> retried rsync invocations.

Tables are dispatched concurrently through a bounded worker pool; the
invocations of one table run one after another, in manifest order. A table
that fails is recorded in the upload log and never holds up other tables.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass

from csvferry.exceptions import PartialManifestError, TransferError, TransferTimeoutError
from csvferry.manifest import TableManifest
from csvferry.transfer.planner import RemoteTarget, TransferInvocation, default_arg_budget, plan_invocations
from csvferry.transfer.retry import RetryManager, RetryPolicy
from csvferry.transfer.runner import RsyncRunner, TransferResult, TransferRunner
from csvferry.upload_log import OUTCOME_FAILED, OUTCOME_SUCCEEDED, UploadLog, UploadRecord
from csvferry.utils.logging import get_logger

logger = get_logger("csvferry.transfer.dispatch")


@dataclass(frozen=True)
class DispatchOutcome:
    """Terminal result of dispatching one table manifest."""

    table_name: str
    attempt_count: int
    succeeded: bool
    last_error: str | None = None
    invocation_count: int = 0


class DispatchEngine:
    """
    Turns table manifests into transfer invocations.

    Args:
        target: Remote host/user/base directory
        runner: Process runner (default: RsyncRunner)
        policy: Retry policy per invocation (default: 3 attempts)
        arg_budget: Maximum argv bytes per invocation
        timeout: Seconds before an invocation is cancelled
        max_workers: Tables dispatched concurrently
        upload_log: Sink for per-invocation outcomes
        delete_after_upload: Remove local source and metadata files once transferred
    """

    def __init__(
        self,
        target: RemoteTarget,
        *,
        runner: TransferRunner | None = None,
        policy: RetryPolicy | None = None,
        retry_manager: RetryManager | None = None,
        arg_budget: int | None = None,
        timeout: float = 300.0,
        max_workers: int = 4,
        upload_log: UploadLog | None = None,
        delete_after_upload: bool = False,
    ) -> None:
        self.target = target
        self.runner = runner or RsyncRunner()
        self.policy = policy or RetryPolicy()
        self.retry_manager = retry_manager or RetryManager()
        self.arg_budget = arg_budget or default_arg_budget()
        self.timeout = timeout
        self.max_workers = max_workers
        self.upload_log = upload_log
        self.delete_after_upload = delete_after_upload

    async def dispatch_all(self, manifests: Mapping[str, TableManifest], batch_id: str = "") -> list[DispatchOutcome]:
        """Dispatch every table concurrently; one outcome per table, in input order."""
        semaphore = asyncio.Semaphore(self.max_workers)

        async def worker(manifest: TableManifest) -> DispatchOutcome:
            async with semaphore:
                return await self._dispatch_guarded(manifest, batch_id)

        outcomes = await asyncio.gather(*(worker(m) for m in manifests.values()))
        succeeded = sum(1 for o in outcomes if o.succeeded)
        logger.info(f"Batch {batch_id or '-'}: {succeeded}/{len(outcomes)} table(s) transferred")
        return list(outcomes)

    async def dispatch(self, manifest: TableManifest, batch_id: str = "") -> DispatchOutcome:
        """
        Transfer one table's manifest.

        Invocations run sequentially; the outcome succeeds only if all of them
        do, and ``attempt_count`` sums attempts across invocations.
        """
        invocations = plan_invocations(manifest, self.target, arg_budget=self.arg_budget, timeout=self.timeout)
        total = len(invocations)
        attempts = 0
        failed = 0
        last_error: str | None = None

        for number, invocation in enumerate(invocations, start=1):
            label = f"rsync '{manifest.table_name}' [{number}/{total}]"
            state = await self.retry_manager.execute(self._invoke, invocation, policy=self.policy, label=label)
            attempts += state.total_attempts

            if state.succeeded:
                logger.info(f"{label}: transferred {len(invocation.sources)} file(s)")
                self._record(batch_id, invocation, OUTCOME_SUCCEEDED, state.total_attempts, None)
                if self.delete_after_upload:
                    _remove_local_files(invocation)
            else:
                failed += 1
                last_error = state.last_error
                self._record(batch_id, invocation, OUTCOME_FAILED, state.total_attempts, last_error)

        if failed:
            error = PartialManifestError(manifest.table_name, failed, total, last_error)
            logger.error(str(error))

        return DispatchOutcome(
            table_name=manifest.table_name,
            attempt_count=attempts,
            succeeded=failed == 0,
            last_error=last_error,
            invocation_count=total,
        )

    async def _dispatch_guarded(self, manifest: TableManifest, batch_id: str) -> DispatchOutcome:
        try:
            return await self.dispatch(manifest, batch_id)
        except Exception as e:
            logger.exception(f"Dispatch of table '{manifest.table_name}' aborted: {e}")
            if self.upload_log is not None:
                self.upload_log.append(
                    UploadRecord(
                        batch_id=batch_id,
                        table=manifest.table_name,
                        files=tuple(str(p) for p in manifest.source_files),
                        outcome=OUTCOME_FAILED,
                        error=str(e),
                    )
                )
            return DispatchOutcome(manifest.table_name, attempt_count=0, succeeded=False, last_error=str(e))

    async def _invoke(self, invocation: TransferInvocation) -> TransferResult:
        try:
            result = await asyncio.wait_for(self.runner.run(invocation), timeout=invocation.timeout)
        except asyncio.TimeoutError:
            raise TransferTimeoutError(
                f"Transfer to {invocation.destination} timed out after {invocation.timeout:g}s",
                timeout=invocation.timeout,
            ) from None

        if not result.ok:
            stderr = result.stderr.strip()
            raise TransferError(
                f"Transfer to {invocation.destination} exited with status {result.exit_status}"
                + (f": {stderr}" if stderr else ""),
                exit_status=result.exit_status,
                stderr=result.stderr,
            )
        return result

    def _record(
        self, batch_id: str, invocation: TransferInvocation, outcome: str, attempts: int, error: str | None
    ) -> None:
        if self.upload_log is None:
            return
        self.upload_log.append(
            UploadRecord(
                batch_id=batch_id,
                table=invocation.table_name,
                files=tuple(str(p) for p in invocation.sources),
                outcome=outcome,
                attempts=attempts,
                error=error,
            )
        )


def _remove_local_files(invocation: TransferInvocation) -> None:
    for path in invocation.files:
        try:
            path.unlink(missing_ok=True)
            logger.debug(f"Removed {path}")
        except OSError as e:
            logger.error(f"Failed to remove {path}: {e}")
