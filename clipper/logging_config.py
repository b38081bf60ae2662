"""
Logging configuration for clipper.

Library loggers (httpx, openai) are noisy at INFO; keep them quiet unless
debugging. The operations log is independent of verbosity: every store
opened through ClipperService.open() records captures, menu rebuilds and
failures in ``clipper-ops.log`` next to its database.
"""

import logging
import os
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

_LIBRARY_LOGGERS = ("httpx", "httpcore", "openai")

OPS_LOG_FILENAME = "clipper-ops.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    Args:
        quiet: If True, suppress verbose output. If False, leave levels alone.
    """
    if not quiet:
        return
    warnings.filterwarnings("ignore")
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _has_stderr_handler(logger: logging.Logger) -> bool:
    return any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in logger.handlers
    )


def enable_debug_mode():
    """Send clipper and library debug output to stderr."""
    warnings.filterwarnings("default")

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    if not _has_stderr_handler(root):
        stderr = logging.StreamHandler(sys.stderr)
        stderr.setLevel(logging.DEBUG)
        stderr.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S",
        ))
        root.addHandler(stderr)

    for name in ("clipper", *_LIBRARY_LOGGERS):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_logging(store_path=None):
    """Apply the default logging policy: debug if CLIPPER_VERBOSE, else quiet.

    Also attaches the operations log when a store path is given.
    Returns the ops-log handler, or None.
    """
    if os.environ.get("CLIPPER_VERBOSE"):
        enable_debug_mode()
    else:
        configure_quiet_mode(True)
    if store_path is None:
        return None
    return configure_ops_log(store_path)


def configure_ops_log(store_path) -> RotatingFileHandler:
    """Attach the rotating operations log for a store directory.

    The caller owns the returned handler and must remove it from the
    ``clipper`` logger when the store is closed.
    """
    path = Path(store_path) / OPS_LOG_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)

    ops = RotatingFileHandler(str(path), maxBytes=OPS_LOG_MAX_BYTES, backupCount=OPS_LOG_BACKUPS)
    ops.setLevel(logging.INFO)
    ops.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S",
    ))

    clipper_logger = logging.getLogger("clipper")
    clipper_logger.addHandler(ops)
    # INFO must reach the file even when the root logger is quieter
    if clipper_logger.level == logging.NOTSET or clipper_logger.level > logging.INFO:
        clipper_logger.setLevel(logging.INFO)
    return ops
