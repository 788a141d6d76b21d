"""
Exceptions and error logging for knowhow.

The store API raises these; the CLI turns them into one-line messages
and records anything unexpected in the store's error log.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import get_default_store_path


class KnowledgeError(Exception):
    """Base class for knowledge store errors."""


class ValidationError(KnowledgeError, ValueError):
    """Empty or malformed input (e.g. empty entry content)."""


class NotFoundError(KnowledgeError, LookupError):
    """Operation on an id that does not exist."""


class PreconditionError(KnowledgeError):
    """Required source tables or file are absent.

    Raised inside the reconciler only; callers see a NO_DATA or ERROR
    outcome instead.
    """


class BackupError(KnowledgeError, OSError):
    """Backup file could not be read or written."""


ERROR_LOG_FILENAME = "knowhow-errors.log"


def error_log_path(store_path: Optional[Path] = None) -> Path:
    """
    Where unexpected CLI failures are recorded.

    An explicit store wins, then KNOWHOW_STORE_PATH, then ~/.knowhow.
    """
    if store_path is None:
        store_path = get_default_store_path()
    return Path(store_path).expanduser() / ERROR_LOG_FILENAME


def log_exception(exc: BaseException, context: str = "",
                  store_path: Optional[Path] = None) -> Path:
    """
    Append an exception and its traceback to the store's error log.

    Args:
        exc: The exception that occurred
        context: Where it happened (e.g. the command name)
        store_path: Store directory, when the caller knows it

    Returns:
        Path to the error log file (written best effort)
    """
    log_path = error_log_path(store_path)
    header = f"[{datetime.now(timezone.utc).isoformat()}]"
    if context:
        header += f" {context}"
    record = "\n".join([
        "=" * 60,
        header,
        f"{type(exc).__name__}: {exc}",
        "".join(traceback.format_exception(exc)).rstrip(),
        "",
    ])
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(record)
    except OSError:
        pass  # an unwritable log must not mask the original error
    return log_path
