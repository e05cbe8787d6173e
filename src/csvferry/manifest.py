"""
Manifest builder: matched files grouped by destination table.

For every matched file a metadata record is written next to it
(``<file>.metadata``), and the (source, metadata) pair is appended to the
table's manifest in batch order.
"""

from __future__ import annotations

import getpass
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from csvferry.batching import Batch
from csvferry.exceptions import MatchMiss
from csvferry.templates import TemplateIndex, match
from csvferry.upload_log import OUTCOME_FAILED, OUTCOME_UNMATCHED, UploadLog, UploadRecord
from csvferry.utils.logging import get_logger

logger = get_logger("csvferry.manifest")

METADATA_SUFFIX = ".metadata"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def file_owner(path: Path) -> str:
    """Login name owning ``path``, falling back to the current user."""
    try:
        import pwd

        return pwd.getpwuid(os.stat(path).st_uid).pw_name
    except (ImportError, KeyError, OSError):
        return getpass.getuser()


@dataclass(frozen=True)
class MetadataRecord:
    upload_timestamp: str
    user: str
    source_file_name: str

    def render(self) -> str:
        return f"{self.upload_timestamp},{self.user},{self.source_file_name}"


@dataclass
class TableManifest:
    """Source/metadata pairs for one table; ``metadata_files[i]`` belongs to ``source_files[i]``."""

    table_name: str
    source_files: list[Path] = field(default_factory=list)
    metadata_files: list[Path] = field(default_factory=list)

    def add(self, source: Path, metadata: Path) -> None:
        self.source_files.append(source)
        self.metadata_files.append(metadata)

    def pairs(self) -> list[tuple[Path, Path]]:
        return list(zip(self.source_files, self.metadata_files))

    def __len__(self) -> int:
        return len(self.source_files)


def metadata_path_for(source: Path) -> Path:
    return source.with_name(source.name + METADATA_SUFFIX)


def write_metadata(source: Path, record: MetadataRecord) -> Path:
    path = metadata_path_for(source)
    path.write_text(record.render(), encoding="utf-8")
    return path


def timestamped_name(source: Path, rename_format: str, now: datetime) -> Path:
    """``data.csv`` -> ``data_<now formatted>.csv`` in the same directory."""
    return source.with_name(f"{source.stem}_{now.strftime(rename_format)}{source.suffix}")


class ManifestBuilder:
    """
    Builds per-table manifests for a flushed batch.

    Misses and per-file write failures are soft: they are logged, recorded in
    the upload log and the file is left out; the rest of the batch continues.
    """

    def __init__(
        self,
        index: TemplateIndex,
        *,
        upload_log: UploadLog | None = None,
        rename_format: str | None = None,
        identity: Callable[[Path], str] = file_owner,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.index = index
        self.upload_log = upload_log
        self.rename_format = rename_format
        self.identity = identity
        self.now = now

    def build(self, batch: Batch) -> dict[str, TableManifest]:
        manifests: dict[str, TableManifest] = {}
        for path in batch.paths:
            result = match(self.index, path)
            if result.table_name is None:
                miss = MatchMiss(str(path), result.reason or "No matching table headers found.")
                logger.warning(f"Skipping {path.name}: {miss.reason}")
                self._record(batch, None, path, OUTCOME_UNMATCHED, miss.reason)
                continue

            try:
                source, metadata = self._prepare(path)
            except OSError as e:
                logger.error(f"Failed to prepare {path} for table '{result.table_name}': {e}")
                self._record(batch, result.table_name, path, OUTCOME_FAILED, f"Cannot prepare file: {e}")
                continue

            manifest = manifests.get(result.table_name)
            if manifest is None:
                manifest = manifests[result.table_name] = TableManifest(result.table_name)
            manifest.add(source, metadata)

        if manifests:
            summary = ", ".join(f"{name}={len(m)}" for name, m in manifests.items())
            logger.info(f"Batch {batch.batch_id} manifests: {summary}")
        return manifests

    def _prepare(self, path: Path) -> tuple[Path, Path]:
        now = self.now()
        source = path
        if self.rename_format:
            source = timestamped_name(path, self.rename_format, now)
            os.rename(path, source)
            logger.info(f"Renamed {path.name} -> {source.name}")

        record = MetadataRecord(
            upload_timestamp=now.strftime(TIMESTAMP_FORMAT),
            user=self.identity(source),
            source_file_name=source.name,
        )
        metadata = write_metadata(source, record)
        logger.debug(f"Wrote metadata {metadata}: {record.render()}")
        return source, metadata

    def _record(self, batch: Batch, table: str | None, path: Path, outcome: str, error: str) -> None:
        if self.upload_log is None:
            return
        self.upload_log.append(
            UploadRecord(batch_id=batch.batch_id, table=table, files=(str(path),), outcome=outcome, error=error)
        )


def build_manifests(batch: Batch, index: TemplateIndex, **kwargs) -> dict[str, TableManifest]:
    """Convenience wrapper around :class:`ManifestBuilder`."""
    return ManifestBuilder(index, **kwargs).build(batch)
