"""
Provenance from the local git checkout.

Runs a handful of git commands in the working directory. Every command
is allowed to fail; missing values come back as None.
"""

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Optional

from .base import empty_context, get_registry

logger = logging.getLogger(__name__)

_GITHUB_REMOTE_RE = re.compile(r"github\.com[/:]([^/]+/[^/]+?)(?:\.git)?/?$")
_GENERIC_REMOTE_RE = re.compile(r"([^/:]+?)(?:\.git)?/?$")

SHORT_SHA_LENGTH = 7


class GitProvenance:
    """Provenance provider backed by the git CLI."""

    def __init__(self, cwd: Optional[str] = None, timeout: float = 5.0):
        self._cwd = Path(cwd) if cwd else None
        self._timeout = timeout

    def _run(self, *args: str) -> Optional[str]:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self._cwd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("git %s failed: %s", " ".join(args), e)
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def get_current_context(self) -> dict[str, Optional[str]]:
        context = empty_context()

        remote = self._run("remote", "get-url", "origin")
        if remote:
            context["repo"] = repo_name_from_remote(remote)

        context["branch"] = self._run("branch", "--show-current")
        sha = self._run("rev-parse", "HEAD")
        context["commit_sha"] = sha[:SHORT_SHA_LENGTH] if sha else None
        context["author"] = self._run("config", "user.name")
        context["project_type"] = detect_project_type(self._cwd or Path.cwd())
        return context


def repo_name_from_remote(url: str) -> Optional[str]:
    """'git@github.com:owner/name.git' -> 'owner/name'; other hosts -> last path part."""
    url = url.strip()
    m = _GITHUB_REMOTE_RE.search(url)
    if m:
        return m.group(1)
    m = _GENERIC_REMOTE_RE.search(url)
    return m.group(1) if m else None


def detect_project_type(directory: Path) -> Optional[str]:
    """Guess the project type from marker files in a directory."""
    if (directory / "pyproject.toml").exists() or (directory / "setup.py").exists():
        return "python"
    composer = directory / "composer.json"
    if composer.exists():
        try:
            require = json.loads(composer.read_text(encoding="utf-8")).get("require", {})
        except (OSError, ValueError, AttributeError):
            return "php"
        if "laravel-zero/framework" in require:
            return "laravel-zero"
        if "laravel/framework" in require:
            return "laravel"
        return "php"
    if (directory / "package.json").exists():
        return "node"
    if (directory / "Cargo.toml").exists():
        return "rust"
    if (directory / "go.mod").exists():
        return "go"
    return None


class NullProvenance:
    """Provenance provider that records nothing."""

    def get_current_context(self) -> dict[str, Optional[str]]:
        return empty_context()


# Register providers
_registry = get_registry()
_registry.register("provenance", "git", GitProvenance)
_registry.register("provenance", "none", NullProvenance)
