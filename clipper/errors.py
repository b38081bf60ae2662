"""
Error types and error logging for clipper.

Every failure the background service can see maps onto one of these.
Most are absorbed close to where they happen; only StoreWriteExhaustion
is meant to reach the caller of a store mutation.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class ClipperError(Exception):
    """Base class for clipper errors."""


class ValidationError(ClipperError):
    """Ineligible capture target, empty selection, or malformed input."""


class TransientIOError(ClipperError):
    """Store conflict or network failure that may succeed on retry."""


class StoreWriteExhaustion(TransientIOError):
    """A read-modify-write kept conflicting until the retry bound ran out."""

    def __init__(self, key: str, attempts: int):
        super().__init__(
            f"Store write to {key!r} failed after {attempts} conflicting attempts"
        )
        self.key = key
        self.attempts = attempts


class AnnotationParseError(ClipperError):
    """The annotation endpoint returned a body we could not interpret."""


class MenuCreationError(ClipperError):
    """The trigger surface refused to create an entry."""


class MenuEntryExists(MenuCreationError):
    """The entry id is already present on the trigger surface."""


ERROR_LOG_FILENAME = "clipper-errors.log"
ENTRY_RULE = "=" * 60


def _error_log_path() -> Path:
    """The error log lives in the store directory (CLIPPER_STORE_PATH or ~/.clipper)."""
    store = os.environ.get("CLIPPER_STORE_PATH")
    base = Path(store) if store else Path.home() / ".clipper"
    return base / ERROR_LOG_FILENAME


def format_error_entry(exc: BaseException, context: str = "") -> str:
    """One log entry: a rule, a timestamped header, then the traceback."""
    header = f"[{datetime.now(timezone.utc).isoformat()}]"
    if context:
        header += f" {context}"
    return f"\n{ENTRY_RULE}\n{header}\n" + "".join(traceback.format_exception(exc))


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Append the exception and its traceback to the error log.

    The file is created owner-only (mode 0600).
    Failure to write is ignored; the handler that caught ``exc`` carries on.

    Args:
        exc: The exception that occurred
        context: Where it happened (e.g., the handler name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    entry = format_error_entry(exc, context)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(entry)
    except OSError:
        pass
    return log_path
