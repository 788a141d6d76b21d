"""Tests for the exception hierarchy and the error log."""

from pathlib import Path

import pytest

from knowhow.errors import (
    BackupError,
    KnowledgeError,
    NotFoundError,
    ValidationError,
    error_log_path,
    log_exception,
)


class TestHierarchy:

    @pytest.mark.parametrize("cls, builtin", [
        (ValidationError, ValueError),
        (NotFoundError, LookupError),
        (BackupError, OSError),
    ])
    def test_catchable_as_builtin(self, cls, builtin):
        with pytest.raises(builtin):
            raise cls("nope")
        assert issubclass(cls, KnowledgeError)


class TestErrorLog:

    def test_explicit_store(self, tmp_path):
        try:
            raise RuntimeError("disk on fire")
        except RuntimeError as e:
            path = log_exception(e, context="knowhow add", store_path=tmp_path)

        assert path == tmp_path / "knowhow-errors.log"
        text = path.read_text(encoding="utf-8")
        assert "knowhow add" in text
        assert "RuntimeError: disk on fire" in text
        assert "Traceback" in text

    def test_appends(self, tmp_path):
        log_exception(ValueError("one"), store_path=tmp_path)
        log_exception(ValueError("two"), store_path=tmp_path)
        text = (tmp_path / "knowhow-errors.log").read_text(encoding="utf-8")
        assert text.index("one") < text.index("two")

    def test_env_var(self, tmp_path, monkeypatch):
        monkeypatch.setenv("KNOWHOW_STORE_PATH", str(tmp_path))
        assert error_log_path() == tmp_path.resolve() / "knowhow-errors.log"

    def test_home_fallback(self, monkeypatch):
        monkeypatch.delenv("KNOWHOW_STORE_PATH", raising=False)
        assert error_log_path() == Path.home() / ".knowhow" / "knowhow-errors.log"

    def test_unwritable_location(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        # Parent is a regular file, so the log cannot be created
        path = log_exception(RuntimeError("x"), store_path=blocker)
        assert path == blocker / "knowhow-errors.log"
        assert not path.exists()
