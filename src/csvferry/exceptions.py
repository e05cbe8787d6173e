"""
csvferry exception hierarchy.

All domain-specific exceptions inherit from CsvFerryError, making it easy
to catch any framework error with a single base class while still allowing
fine-grained handling when needed.

Hierarchy::

    CsvFerryError
    ├── ConfigurationError        - config loading, template index (fatal)
    ├── WatchError                - change-notification source died (fatal)
    ├── MatchMiss                 - no template matches a file (soft, per file)
    └── TransferError             - one transfer invocation failed
        ├── TransferTimeoutError  - invocation exceeded its timeout
        └── PartialManifestError  - some invocations of a table exhausted retries
"""

from __future__ import annotations


class CsvFerryError(Exception):
    """Base exception for all csvferry errors."""

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# --- Configuration -----------------------------------------------------------


class ConfigurationError(CsvFerryError):
    """Raised when configuration loading, parsing, or validation fails."""


# Short alias used throughout the error taxonomy
ConfigError = ConfigurationError


# --- Watching ----------------------------------------------------------------


class WatchError(CsvFerryError):
    """Raised when the change-notification source terminates or errors.

    A broken watch cannot be recovered; the service stops after flushing
    whatever batch was pending.
    """


# --- Matching ----------------------------------------------------------------


class MatchMiss(CsvFerryError):
    """A file whose header row matches no known template.

    Never raised out of the pipeline: instances are logged and written to the
    upload log, and the file is left out of every manifest.
    """

    def __init__(self, path: str, reason: str = "No matching table headers found.") -> None:
        super().__init__(f"{path}: {reason}", details={"path": path, "reason": reason})
        self.path = path
        self.reason = reason


# --- Transfer ----------------------------------------------------------------


class TransferError(CsvFerryError):
    """Raised when a transfer invocation exits non-zero or cannot be spawned."""

    def __init__(self, message: str, *, exit_status: int | None = None, stderr: str = "") -> None:
        super().__init__(message, details={"exit_status": exit_status, "stderr": stderr})
        self.exit_status = exit_status
        self.stderr = stderr


class TransferTimeoutError(TransferError):
    """Raised when a transfer invocation does not finish within its timeout."""

    def __init__(self, message: str, *, timeout: float) -> None:
        super().__init__(message)
        self.details["timeout"] = timeout
        self.timeout = timeout


class PartialManifestError(TransferError):
    """One or more invocations derived from a table manifest exhausted retries."""

    def __init__(self, table_name: str, failed: int, total: int, last_error: str | None) -> None:
        message = f"Table '{table_name}': {failed}/{total} invocation(s) failed"
        if last_error:
            message += f"; last error: {last_error}"
        super().__init__(message)
        self.details.update({"table": table_name, "failed": failed, "total": total})
        self.table_name = table_name
