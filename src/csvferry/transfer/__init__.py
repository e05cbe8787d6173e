"""
Transfer of table manifests to the remote host.
"""

from csvferry.transfer.dispatch import DispatchEngine, DispatchOutcome
from csvferry.transfer.planner import (
    RemoteTarget,
    TransferInvocation,
    argv_size,
    default_arg_budget,
    plan_invocations,
)
from csvferry.transfer.retry import RetryManager, RetryPolicy, RetryState
from csvferry.transfer.runner import RsyncRunner, TransferResult, TransferRunner

__all__ = [
    "DispatchEngine",
    "DispatchOutcome",
    "RemoteTarget",
    "TransferInvocation",
    "argv_size",
    "default_arg_budget",
    "plan_invocations",
    "RetryManager",
    "RetryPolicy",
    "RetryState",
    "RsyncRunner",
    "TransferResult",
    "TransferRunner",
]
