"""Tests for the built-in collaborator providers and the registry."""

import json
import subprocess

import pytest

from knowhow.providers.base import (
    EmbeddingProvider,
    ProvenanceProvider,
    ProviderRegistry,
    SemanticSearchProvider,
    empty_context,
    get_registry,
)
from knowhow.providers.git import (
    GitProvenance,
    NullProvenance,
    detect_project_type,
    repo_name_from_remote,
)
from knowhow.providers.keywords import (
    KeywordSemanticSearch,
    NoEmbedding,
    jaccard_similarity,
    suggest_keyword_tags,
)
from knowhow.types import Entry


class TestRepoNameFromRemote:

    @pytest.mark.parametrize("url, expected", [
        ("git@github.com:acme/app.git", "acme/app"),
        ("https://github.com/acme/app", "acme/app"),
        ("https://github.com/acme/app.git\n", "acme/app"),
        ("https://gitlab.com/group/project.git", "project"),
        ("/srv/git/local-repo", "local-repo"),
    ])
    def test_remote_formats(self, url, expected):
        assert repo_name_from_remote(url) == expected


class TestDetectProjectType:

    @pytest.mark.parametrize("marker, expected", [
        ("pyproject.toml", "python"),
        ("setup.py", "python"),
        ("package.json", "node"),
        ("Cargo.toml", "rust"),
        ("go.mod", "go"),
    ])
    def test_marker_files(self, tmp_path, marker, expected):
        (tmp_path / marker).write_text("")
        assert detect_project_type(tmp_path) == expected

    @pytest.mark.parametrize("require, expected", [
        ({"laravel/framework": "^11"}, "laravel"),
        ({"laravel-zero/framework": "^10"}, "laravel-zero"),
        ({"monolog/monolog": "^3"}, "php"),
    ])
    def test_composer_variants(self, tmp_path, require, expected):
        (tmp_path / "composer.json").write_text(json.dumps({"require": require}))
        assert detect_project_type(tmp_path) == expected

    def test_unreadable_composer(self, tmp_path):
        (tmp_path / "composer.json").write_text("{broken")
        assert detect_project_type(tmp_path) == "php"

    def test_unknown(self, tmp_path):
        assert detect_project_type(tmp_path) is None


class TestGitProvenance:

    def _fake_git(self, monkeypatch, outputs):
        """Replace subprocess.run with canned git output keyed by subcommand."""
        def fake_run(args, **kwargs):
            out = outputs.get(args[1])
            if isinstance(out, Exception):
                raise out
            return subprocess.CompletedProcess(
                args, 0 if out is not None else 128, stdout=(out or "") + "\n", stderr="")
        monkeypatch.setattr("knowhow.providers.git.subprocess.run", fake_run)

    def test_full_context(self, tmp_path, monkeypatch):
        (tmp_path / "go.mod").write_text("module x")
        self._fake_git(monkeypatch, {
            "remote": "git@github.com:acme/app.git",
            "branch": "main",
            "rev-parse": "0123456789abcdef",
            "config": "Sam Developer",
        })
        context = GitProvenance(cwd=str(tmp_path)).get_current_context()
        assert context == {
            "repo": "acme/app",
            "branch": "main",
            "commit_sha": "0123456",
            "author": "Sam Developer",
            "project_type": "go",
        }

    def test_outside_repository(self, tmp_path, monkeypatch):
        self._fake_git(monkeypatch, {})
        context = GitProvenance(cwd=str(tmp_path)).get_current_context()
        assert context == empty_context()

    def test_git_missing(self, tmp_path, monkeypatch):
        error = FileNotFoundError("git")
        self._fake_git(monkeypatch, {
            "remote": error, "branch": error, "rev-parse": error, "config": error,
        })
        context = GitProvenance(cwd=str(tmp_path)).get_current_context()
        assert context["repo"] is None
        assert context["commit_sha"] is None


class TestKeywords:

    def test_suggestions_in_table_order(self):
        assert suggest_keyword_tags("Slow SQL query causes an error") == [
            "bug", "performance", "database",
        ]

    def test_substring_matching(self):
        # "rest" inside "interesting"
        assert suggest_keyword_tags("An interesting read") == ["api"]

    def test_no_suggestions(self):
        assert suggest_keyword_tags("Lunch notes") == []

    def test_custom_table(self):
        provider = KeywordSemanticSearch(keywords={"infra": ["docker"]})
        assert provider.suggest_tags("Docker compose setup") == ["infra"]
        assert provider.suggest_tags("security review") == []

    def test_jaccard(self):
        assert jaccard_similarity("a b c", "a b c") == 1.0
        assert jaccard_similarity("red green", "green blue") == pytest.approx(1 / 3)
        assert jaccard_similarity("", "") == 0.0

    def test_find_similar(self):
        entry = Entry(id=1, content="deploy the web service")
        candidates = [
            Entry(id=1, content="deploy the web service"),
            Entry(id=2, content="deploy the web service today"),
            Entry(id=3, content="deploy notes"),
            Entry(id=4, content="completely unrelated words"),
        ]
        provider = KeywordSemanticSearch()
        assert provider.find_similar(entry, candidates) == [2, 3]
        assert provider.find_similar(entry, candidates, limit=1) == [2]

    def test_search_disabled(self):
        provider = KeywordSemanticSearch()
        assert provider.is_enabled() is False
        assert provider.search("anything") == []

    def test_no_embedding(self):
        assert NoEmbedding().generate_embedding("text") is None


class TestRegistry:

    def test_builtin_providers(self):
        registry = get_registry()
        assert isinstance(registry.create("provenance", "none"), NullProvenance)
        assert isinstance(registry.create("semantic", "keywords"), KeywordSemanticSearch)
        assert isinstance(registry.create("embedding", "none"), NoEmbedding)
        assert registry.available("provenance") == ["git", "none"]

    def test_params_passed_to_constructor(self):
        provider = get_registry().create("semantic", "keywords", {"min_similarity": 0.9})
        entry = Entry(id=1, content="a b c d")
        assert provider.find_similar(entry, [Entry(id=2, content="a b c")]) == []

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown semantic provider"):
            get_registry().create("semantic", "vectors")

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Unknown provider kind"):
            get_registry().register("summarizer", "x", object)

    def test_bad_params(self):
        with pytest.raises(RuntimeError):
            get_registry().create("provenance", "git", {"bogus": 1})

    def test_custom_registry(self):
        registry = ProviderRegistry()
        registry.register("provenance", "fixed", NullProvenance)
        assert "fixed" in registry.available("provenance")

    def test_protocols(self):
        assert isinstance(NullProvenance(), ProvenanceProvider)
        assert isinstance(NoEmbedding(), EmbeddingProvider)
        assert isinstance(KeywordSemanticSearch(), SemanticSearchProvider)

    def test_null_provenance(self):
        assert NullProvenance().get_current_context() == empty_context()

    def test_empty_context_matches_entry_provenance(self):
        assert empty_context().keys() == Entry(id=1, content="x").git_context.keys()
