"""
Error types and error logging utilities for tally.

Core operations raise typed errors and never terminate the process.
Only the CLI boundary decides to exit; it logs full stack traces for
debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class TallyError(Exception):
    """Base class for all tally errors."""


class NotFoundError(TallyError):
    """No note exists yet for a category at the anchor commit."""


class DecodeError(TallyError):
    """A note payload is malformed JSON or a record is missing required fields."""


class TimestampParseError(TallyError, ValueError):
    """A timestamp string does not conform to ISO 8601."""


class BackendError(TallyError):
    """An underlying version-control operation failed."""

    def __init__(self, message: str, *, command: Optional[list[str]] = None, stderr: str = ""):
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class AnchorError(BackendError):
    """The anchor commit could not be resolved (empty or multi-root history)."""


class ConflictError(TallyError):
    """A category blob changed between read and write (compare-and-swap lost)."""


class StaleNoteError(TallyError):
    """A note handle was used after a merge replaced the note it points at."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting TALLY_ERROR_LOG."""
    override = os.environ.get("TALLY_ERROR_LOG")
    if override:
        return Path(override)
    return Path.home() / ".tally" / "tally-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
