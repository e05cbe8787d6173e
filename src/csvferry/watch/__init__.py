"""
Filesystem change notifications.
"""

from csvferry.watch.events import ChangeEvent, ChangeKind, SourceClosed
from csvferry.watch.source import QueueingEventHandler, WatchdogEventSource

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "SourceClosed",
    "QueueingEventHandler",
    "WatchdogEventSource",
]
