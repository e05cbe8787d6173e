"""
csvferry - watch a directory for CSV files, classify them by header
template and ship them to per-table directories on a remote host.
"""

__version__ = "0.1.0"

from csvferry.batching import Batch, BatchEngine
from csvferry.config import Config, Settings, load_config
from csvferry.exceptions import (
    ConfigError,
    ConfigurationError,
    CsvFerryError,
    MatchMiss,
    PartialManifestError,
    TransferError,
    TransferTimeoutError,
    WatchError,
)
from csvferry.manifest import ManifestBuilder, MetadataRecord, TableManifest, build_manifests
from csvferry.pipeline import Pipeline, WatchService
from csvferry.templates import MatchResult, TemplateIndex, build_index, match
from csvferry.transfer import DispatchEngine, DispatchOutcome, RemoteTarget, RetryPolicy
from csvferry.upload_log import UploadLog, UploadRecord
from csvferry.utils.logging import get_logger, setup_logging, setup_logging_from_config
from csvferry.watch import ChangeEvent, ChangeKind

__all__ = [
    # Batching
    "Batch",
    "BatchEngine",
    "ChangeEvent",
    "ChangeKind",
    # Matching / manifests
    "TemplateIndex",
    "MatchResult",
    "build_index",
    "match",
    "ManifestBuilder",
    "MetadataRecord",
    "TableManifest",
    "build_manifests",
    # Dispatch
    "DispatchEngine",
    "DispatchOutcome",
    "RemoteTarget",
    "RetryPolicy",
    "UploadLog",
    "UploadRecord",
    "Pipeline",
    "WatchService",
    # Config
    "Config",
    "Settings",
    "load_config",
    # Logging
    "get_logger",
    "setup_logging",
    "setup_logging_from_config",
    # Exceptions
    "CsvFerryError",
    "ConfigurationError",
    "ConfigError",
    "WatchError",
    "MatchMiss",
    "TransferError",
    "TransferTimeoutError",
    "PartialManifestError",
]
