"""
Logging configuration for knowhow.

Every module logs through ``logging.getLogger(__name__)`` under the
``knowhow`` logger. The CLI is quiet by default; ``--verbose`` (or
KNOWHOW_VERBOSE=1) adds a stderr handler. Each open store also writes
an operations log in its directory.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "knowhow-ops.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3

_package_logger = logging.getLogger("knowhow")


def configure_quiet_mode(quiet: bool = True):
    """
    Keep CLI output to results and errors.

    Args:
        quiet: If True, drop warnings and anything below WARNING on stderr.
    """
    if not quiet:
        return
    warnings.filterwarnings("ignore")
    _package_logger.setLevel(logging.WARNING)


def enable_debug_mode():
    """Send debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    has_stderr = any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in root.handlers
    )
    if not has_stderr:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))
        root.addHandler(handler)

    _package_logger.setLevel(logging.DEBUG)


def configure_ops_log(store_path) -> logging.Handler:
    """
    Attach a rotating operations log for one store.

    Entries added and deleted, reconciliation runs and swallowed
    collaborator failures land in ``{store_path}/knowhow-ops.log``
    whatever the verbosity. Pass the returned handler to remove_ops_log()
    when the store closes.
    """
    log_path = Path(store_path) / OPS_LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=OPS_LOG_MAX_BYTES,
        backupCount=OPS_LOG_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    _package_logger.addHandler(handler)

    # INFO must reach the file even when the CLI is quiet
    if _package_logger.level == logging.NOTSET or _package_logger.level > logging.INFO:
        _package_logger.setLevel(logging.INFO)
    return handler


def remove_ops_log(handler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    if handler is None:
        return
    _package_logger.removeHandler(handler)
    handler.close()
