"""
Template index and header matching.

Each template file ``<table>_template.csv`` defines the exact, ordered column
header a source file must carry to be routed to ``<table>``. Matching is
strict: same length, same names, same order, same case.
"""

from __future__ import annotations

import csv
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

from csvferry.exceptions import ConfigurationError
from csvferry.utils.logging import get_logger

logger = get_logger("csvferry.templates")

Signature = tuple[str, ...]

DEFAULT_SUFFIX = "_template"


class TemplateIndex(Mapping[Signature, str]):
    """Immutable mapping from header signature to table name."""

    def __init__(self, entries: Mapping[Signature, str]) -> None:
        self._entries = MappingProxyType(dict(entries))

    def __getitem__(self, signature: Signature) -> str:
        return self._entries[signature]

    def __iter__(self) -> Iterator[Signature]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"TemplateIndex({len(self)} tables: {sorted(self.tables)})"

    @property
    def tables(self) -> list[str]:
        return list(self._entries.values())

    def lookup(self, signature: Signature) -> str | None:
        return self._entries.get(tuple(signature))


@dataclass(frozen=True)
class MatchResult:
    """Outcome of classifying one source file."""

    source_path: Path
    table_name: str | None
    reason: str | None = None

    @property
    def matched(self) -> bool:
        return self.table_name is not None


def read_header(path: Path) -> Signature | None:
    """
    Read the first row of a CSV file as an ordered signature.

    Cells are kept verbatim, whitespace included; only trailing empty cells
    (from a trailing delimiter) are dropped. A UTF-8 byte order mark is
    ignored.

    Returns:
        The signature, or None if the file has no non-empty first row

    Raises:
        OSError: If the file cannot be read
        UnicodeDecodeError: If the first line is not UTF-8
    """
    with open(path, newline="", encoding="utf-8-sig") as f:
        row = next(csv.reader(f), None)
    if row is None:
        return None
    cells = list(row)
    while cells and cells[-1] == "":
        cells.pop()
    return tuple(cells) or None


def table_name_for(path: Path, suffix: str = DEFAULT_SUFFIX) -> str | None:
    """``anthropometry_template.csv`` -> ``anthropometry``; None if not a template name."""
    stem = path.stem
    if not stem.endswith(suffix) or stem == suffix:
        return None
    return stem[: -len(suffix)]


def build_index(template_dir: Path, suffix: str = DEFAULT_SUFFIX, extension: str = ".csv") -> TemplateIndex:
    """
    Build the template index from every ``<table><suffix><extension>`` file.

    Files are read in name order; when two templates share a signature the
    later one wins and a warning is logged.

    Args:
        template_dir: Directory holding template files
        suffix: Fixed suffix separating the table name from the file name
        extension: Template file extension

    Returns:
        TemplateIndex

    Raises:
        ConfigurationError: If the directory is unreadable or holds no valid template
    """
    template_dir = Path(template_dir)
    try:
        candidates = sorted(p for p in template_dir.iterdir() if p.is_file())
    except OSError as e:
        raise ConfigurationError(
            f"Cannot read template directory {template_dir}: {e}", details={"template_dir": str(template_dir)}
        ) from e

    entries: dict[Signature, str] = {}
    for path in candidates:
        if path.suffix.lower() != extension.lower():
            continue
        table_name = table_name_for(path, suffix)
        if table_name is None:
            logger.debug(f"Skipping {path.name}: name does not end with '{suffix}{extension}'")
            continue
        try:
            signature = read_header(path)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Skipping unreadable template {path}: {e}")
            continue
        if signature is None:
            logger.warning(f"Skipping template {path}: no header row")
            continue

        previous = entries.get(signature)
        if previous is not None and previous != table_name:
            logger.warning(
                f"Templates for '{previous}' and '{table_name}' share the same header; "
                f"files with this header will be routed to '{table_name}'"
            )
        entries[signature] = table_name
        logger.debug(f"Loaded template '{table_name}' with {len(signature)} column(s)")

    if not entries:
        raise ConfigurationError(
            f"No valid templates found in {template_dir} (expected files named '<table>{suffix}{extension}')",
            details={"template_dir": str(template_dir)},
        )

    index = TemplateIndex(entries)
    logger.info(f"Loaded {len(index)} template(s) from {template_dir}")
    return index


def match(index: TemplateIndex, file_path: Path) -> MatchResult:
    """
    Classify a source file by exact, ordered header equality.

    Unreadable files and files without a header never match; the reason is
    carried on the result for the upload log.
    """
    file_path = Path(file_path)
    try:
        signature = read_header(file_path)
    except FileNotFoundError:
        return MatchResult(file_path, None, "File no longer exists.")
    except (OSError, UnicodeDecodeError) as e:
        return MatchResult(file_path, None, f"Cannot read header: {e}")

    if signature is None:
        return MatchResult(file_path, None, "File has no header row.")

    table_name = index.lookup(signature)
    if table_name is None:
        logger.debug(f"No template matches header of {file_path}: {list(signature)}")
        return MatchResult(file_path, None, "No matching table headers found.")

    logger.info(f"Matched {file_path.name} to table '{table_name}'")
    return MatchResult(file_path, table_name)
