"""
Invocation planning: split a table manifest into rsync commands that fit
within the process argument budget.
"""

from __future__ import annotations

import os
import posixpath
import shlex
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from csvferry.utils.logging import get_logger

if TYPE_CHECKING:
    from csvferry.manifest import TableManifest

logger = get_logger("csvferry.transfer.planner")

FALLBACK_ARG_BUDGET = 128 * 1024
MIN_ARG_BUDGET = 4096

RSYNC_OPTIONS = ("-aLvz", "--partial-dir=tmp")


def default_arg_budget() -> int:
    """
    Argument budget derived from ``ARG_MAX``.

    The environment shares the same kernel limit, so its size is subtracted
    first; half of what remains is used.
    """
    try:
        arg_max = os.sysconf("SC_ARG_MAX")
    except (AttributeError, ValueError, OSError):
        arg_max = -1
    if arg_max <= 0:
        return FALLBACK_ARG_BUDGET
    env_size = sum(len(os.fsencode(k)) + len(os.fsencode(v)) + 2 for k, v in os.environ.items())
    return max(MIN_ARG_BUDGET, (arg_max - env_size) // 2)


def argv_size(args: Iterable[str | Path]) -> int:
    """Bytes the arguments occupy in the exec argument block (each NUL-terminated)."""
    return sum(len(os.fsencode(str(arg))) + 1 for arg in args)


@dataclass(frozen=True)
class RemoteTarget:
    """Where table directories live on the remote host."""

    user: str
    host: str
    base_dir: str
    identity_file: str | None = None

    def directory(self, table_name: str) -> str:
        return posixpath.join(self.base_dir, table_name)

    def destination(self, table_name: str) -> str:
        return f"{self.user}@{self.host}:{self.directory(table_name)}"

    def rsync_path(self, table_name: str) -> str:
        """Remote command that creates the table directory before rsync starts."""
        return f"mkdir -p {shlex.quote(self.directory(table_name))} && rsync"

    def ssh_command(self) -> str | None:
        if not self.identity_file:
            return None
        return f"ssh -i {shlex.quote(self.identity_file)}"


@dataclass(frozen=True)
class TransferInvocation:
    """One rsync run covering a bounded set of pairs for one table."""

    table_name: str
    sources: tuple[Path, ...]
    metadata: tuple[Path, ...]
    destination: str
    rsync_path: str
    timeout: float
    ssh_command: str | None = None
    rsync_binary: str = "rsync"

    @property
    def files(self) -> tuple[Path, ...]:
        return self.sources + self.metadata

    def argv(self) -> list[str]:
        args = [self.rsync_binary, *RSYNC_OPTIONS, f"--rsync-path={self.rsync_path}"]
        if self.ssh_command:
            args += ["-e", self.ssh_command]
        args += [str(path) for path in self.files]
        args.append(self.destination)
        return args


def plan_invocations(
    manifest: TableManifest,
    target: RemoteTarget,
    *,
    arg_budget: int,
    timeout: float,
    rsync_binary: str = "rsync",
) -> list[TransferInvocation]:
    """
    Pack a manifest's pairs, in order, into as few invocations as the budget allows.

    A source and its metadata file always travel in the same invocation. A
    pair too large to fit even alone still gets an invocation of its own;
    the kernel will reject it and the failure is reported like any other.
    """

    def make(sources: list[Path], metadata: list[Path]) -> TransferInvocation:
        return TransferInvocation(
            table_name=manifest.table_name,
            sources=tuple(sources),
            metadata=tuple(metadata),
            destination=target.destination(manifest.table_name),
            rsync_path=target.rsync_path(manifest.table_name),
            timeout=timeout,
            ssh_command=target.ssh_command(),
            rsync_binary=rsync_binary,
        )

    fixed = argv_size(make([], []).argv())
    invocations: list[TransferInvocation] = []
    sources: list[Path] = []
    metadata: list[Path] = []
    size = fixed

    for source, meta in manifest.pairs():
        pair_size = argv_size([source, meta])
        if sources and size + pair_size > arg_budget:
            invocations.append(make(sources, metadata))
            sources, metadata, size = [], [], fixed
        if not sources and fixed + pair_size > arg_budget:
            logger.warning(
                f"{source.name} exceeds the argument budget on its own "
                f"({fixed + pair_size} > {arg_budget} bytes)"
            )
        sources.append(source)
        metadata.append(meta)
        size += pair_size

    if sources:
        invocations.append(make(sources, metadata))

    if len(invocations) > 1:
        logger.info(
            f"Table '{manifest.table_name}': {len(manifest)} file(s) split into "
            f"{len(invocations)} invocations (budget {arg_budget} bytes)"
        )
    return invocations
