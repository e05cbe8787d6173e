"""
Process execution behind a narrow interface, so dispatch can be tested
with a fake runner.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol

from csvferry.exceptions import TransferError
from csvferry.transfer.planner import TransferInvocation
from csvferry.utils.logging import get_logger

logger = get_logger("csvferry.transfer.runner")


@dataclass(frozen=True)
class TransferResult:
    exit_status: int
    stderr: str = ""
    stdout: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class TransferRunner(Protocol):
    """Runs one invocation to completion. Timeouts are applied by the caller via cancellation."""

    async def run(self, invocation: TransferInvocation) -> TransferResult: ...


class RsyncRunner:
    """Runs rsync as a child process (no shell) and collects its output."""

    async def run(self, invocation: TransferInvocation) -> TransferResult:
        argv = invocation.argv()
        logger.debug(f"Running: {' '.join(argv)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TransferError(f"Failed to start {invocation.rsync_binary}: {e}") from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Timeout or shutdown: do not leave rsync running behind us
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        return TransferResult(
            exit_status=proc.returncode if proc.returncode is not None else -1,
            stderr=stderr.decode(errors="replace"),
            stdout=stdout.decode(errors="replace"),
        )
