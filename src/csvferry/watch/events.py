"""
Change events flowing from the filesystem watcher into the batch engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class ChangeKind(str, Enum):
    """Kind of filesystem change reported by the watcher."""

    CREATED = "created"
    MODIFIED = "modified"
    OTHER = "other"


@dataclass(frozen=True)
class ChangeEvent:
    """A single create/modify notification for one file."""

    path: Path
    kind: ChangeKind
    observed_at: float


@dataclass(frozen=True)
class SourceClosed:
    """
    Terminal channel item: the event source stopped producing.

    ``error`` is set when the source died rather than being shut down.
    """

    error: BaseException | None = None
