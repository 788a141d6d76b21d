"""
First-run notice state.

The CLI shows a welcome notice when the store is empty. Having shown (or
skipped) it, the check is suppressed for 24 hours. The expiry is kept in
a small JSON file in the store directory.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .types import format_utc_timestamp, parse_utc_timestamp

logger = logging.getLogger(__name__)

STATE_FILENAME = ".first-run.json"
CHECK_TTL = timedelta(hours=24)

WELCOME_TEXT = """\
Welcome to knowhow!

This appears to be your first time using this knowledge store.

If you have data from an earlier knowledge system:
  * Legacy tables in a database: knowhow data migrate
  * A JSON backup file:           knowhow data import <file>

Get started with:
  * knowhow add "Your first knowledge entry" -t tag
  * knowhow search <query>
"""


@dataclass
class FirstRunState:
    """When the next first-run check is due."""
    path: Path
    checked_until: Optional[datetime] = None

    @classmethod
    def load(cls, store_path: Path) -> "FirstRunState":
        path = Path(store_path) / STATE_FILENAME
        if not path.exists():
            return cls(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return cls(path, parse_utc_timestamp(data["checked_until"]))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.debug("Ignoring unreadable first-run state %s: %s", path, e)
            return cls(path)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.checked_until is None or now >= self.checked_until

    def mark_checked(self, now: Optional[datetime] = None) -> None:
        """Suppress the check for the next 24 hours."""
        now = now or datetime.now(timezone.utc)
        self.checked_until = now + CHECK_TTL
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps({"checked_until": format_utc_timestamp(self.checked_until)}),
                encoding="utf-8",
            )
        except OSError as e:
            logger.debug("Cannot persist first-run state %s: %s", self.path, e)


def first_run_notice(store_path: Path, has_entries: bool,
                     now: Optional[datetime] = None) -> Optional[str]:
    """
    Return the welcome text if it should be shown now, else None.

    Every due check marks the state, whether or not the notice is shown.
    """
    state = FirstRunState.load(store_path)
    if not state.is_due(now):
        return None
    state.mark_checked(now)
    return None if has_entries else WELCOME_TEXT
