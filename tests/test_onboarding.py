"""Tests for the first-run notice."""

from datetime import datetime, timedelta, timezone

from knowhow.onboarding import (
    STATE_FILENAME,
    WELCOME_TEXT,
    FirstRunState,
    first_run_notice,
)

NOW = datetime(2026, 5, 1, 9, 0, 0, tzinfo=timezone.utc)


class TestFirstRunState:

    def test_new_state_is_due(self, tmp_path):
        assert FirstRunState.load(tmp_path).is_due(NOW)

    def test_mark_checked_persists(self, tmp_path):
        FirstRunState.load(tmp_path).mark_checked(NOW)
        assert (tmp_path / STATE_FILENAME).exists()

        state = FirstRunState.load(tmp_path)
        assert state.checked_until == NOW + timedelta(hours=24)
        assert not state.is_due(NOW + timedelta(hours=23))
        assert state.is_due(NOW + timedelta(hours=24))

    def test_corrupt_state_is_due(self, tmp_path):
        (tmp_path / STATE_FILENAME).write_text("not json")
        assert FirstRunState.load(tmp_path).is_due(NOW)


class TestFirstRunNotice:

    def test_empty_store_shows_welcome(self, tmp_path):
        assert first_run_notice(tmp_path, has_entries=False, now=NOW) == WELCOME_TEXT

    def test_shown_once_per_day(self, tmp_path):
        first_run_notice(tmp_path, has_entries=False, now=NOW)
        assert first_run_notice(tmp_path, has_entries=False, now=NOW + timedelta(hours=1)) is None
        assert first_run_notice(
            tmp_path, has_entries=False, now=NOW + timedelta(days=1, seconds=1)
        ) == WELCOME_TEXT

    def test_store_with_entries_stays_quiet_but_marks(self, tmp_path):
        assert first_run_notice(tmp_path, has_entries=True, now=NOW) is None
        assert not FirstRunState.load(tmp_path).is_due(NOW)
