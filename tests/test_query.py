"""
Tests for the query/filter engine.

Entries are backdated with direct SQL where a test needs an old
creation time; everything else goes through the public API.
"""

from datetime import datetime, timezone

import pytest

from knowhow.errors import ValidationError
from knowhow.query import SearchFilters, build_query, build_where, filters_from_dict

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _set(kb, entry_id, **columns):
    """Overwrite entry columns directly (backdating, provenance)."""
    for column, value in columns.items():
        kb.store.connection.execute(
            f"UPDATE entries SET {column} = ? WHERE id = ?", (value, entry_id)
        )


def _ids(entries):
    return [e.id for e in entries]


class TestFilterComposition:

    @pytest.fixture
    def entries(self, kb):
        high_recent = kb.add_entry("high and recent", metadata={"priority": "high"})
        high_old = kb.add_entry("high but old", metadata={"priority": "high"})
        low_recent = kb.add_entry("recent but low", metadata={"priority": "low"})
        high_recent_todo = kb.add_entry(
            "high recent todo", tags=["todo"], metadata={"priority": "high"})
        _set(kb, high_recent, created_at="2026-02-27T09:00:00")
        _set(kb, high_old, created_at="2026-01-01T09:00:00")
        _set(kb, low_recent, created_at="2026-02-28T09:00:00")
        _set(kb, high_recent_todo, created_at="2026-02-26T09:00:00")
        return {
            "high_recent": high_recent,
            "high_old": high_old,
            "low_recent": low_recent,
            "high_recent_todo": high_recent_todo,
        }

    def test_priority_and_recent(self, kb, entries):
        results = kb.search_entries("", priority="high", recent=7, now=NOW)
        assert _ids(results) == [entries["high_recent"], entries["high_recent_todo"]]

    def test_adding_tags_narrows_further(self, kb, entries):
        results = kb.search_entries("", priority="high", recent=7, tags=["todo"], now=NOW)
        assert _ids(results) == [entries["high_recent_todo"]]

    def test_todo_shorthand(self, kb, entries):
        results = kb.search_entries(todo=True, now=NOW)
        assert _ids(results) == [entries["high_recent_todo"]]

    def test_status_filter(self, kb, entries):
        kb.set_metadata_value(entries["low_recent"], "status", "completed")
        results = kb.search_entries(status="completed", now=NOW)
        assert _ids(results) == [entries["low_recent"]]


class TestTextAndTags:

    def test_query_matches_content_or_tag_name(self, kb):
        by_content = kb.add_entry("Rotate the signing keys")
        by_tag = kb.add_entry("Unrelated words", tags=["keys-rotation"])
        kb.add_entry("Nothing here")
        assert sorted(_ids(kb.search_entries("keys"))) == sorted([by_content, by_tag])

    def test_query_is_case_insensitive_substring(self, kb):
        entry_id = kb.add_entry("Postgres VACUUM notes")
        assert _ids(kb.search_entries("vacuum")) == [entry_id]

    def test_like_wildcards_are_literal(self, kb):
        percent = kb.add_entry("CPU at 100% during deploy")
        kb.add_entry("CPU at 100 during deploy")
        assert _ids(kb.search_entries("100%")) == [percent]
        assert kb.search_entries("_") == []

    def test_all_listed_tags_must_match(self, kb):
        both = kb.add_entry("both", tags=["frontend", "react"])
        kb.add_entry("one", tags=["frontend"])
        assert _ids(kb.search_entries(tags=["front", "react"])) == [both]

    def test_tags_as_comma_string(self, kb):
        both = kb.add_entry("both", tags=["x1", "y1"])
        assert _ids(kb.search_entries(tags="x1, y1")) == [both]


class TestProvenanceFilters:

    @pytest.fixture
    def entries(self, kb):
        mine = kb.add_entry("mine")
        theirs = kb.add_entry("theirs")
        _set(kb, theirs, repo="other/service", branch="dev", author="alex",
             project_type="node")
        return mine, theirs

    def test_repo_substring(self, kb, entries):
        mine, theirs = entries
        assert _ids(kb.search_entries(repo="other")) == [theirs]

    def test_branch_exact(self, kb, entries):
        mine, theirs = entries
        assert _ids(kb.search_entries(branch="main")) == [mine]
        assert kb.search_entries(branch="mai") == []

    def test_author_substring(self, kb, entries):
        mine, theirs = entries
        assert _ids(kb.search_entries(author="ale")) == [theirs]

    def test_project_type_exact_with_alias(self, kb, entries):
        mine, theirs = entries
        assert _ids(kb.search_entries(project_type="python")) == [mine]
        assert _ids(kb.search_entries(type="node")) == [theirs]

    def test_collection(self, kb, entries):
        coll = kb.create_collection("bucket")
        inside = kb.add_entry("inside", collection_id=coll.id)
        assert _ids(kb.search_entries(collection=coll.id)) == [inside]


class TestOrdering:

    def test_newest_first_with_limit(self, kb):
        ids = [kb.add_entry(f"entry {i}") for i in range(5)]
        for offset, entry_id in enumerate(ids):
            _set(kb, entry_id, created_at=f"2026-01-0{offset + 1}T00:00:00")
        results = kb.search_entries(limit=3)
        assert _ids(results) == [ids[4], ids[3], ids[2]]

    def test_default_limit_from_config(self, kb):
        for i in range(12):
            kb.add_entry(f"entry {i}")
        assert len(kb.search_entries()) == 10

    def test_context_repo_sorts_first(self, kb):
        local_old = kb.add_entry("local old")
        other_new = kb.add_entry("other new")
        local_new = kb.add_entry("local new")
        _set(kb, local_old, created_at="2026-01-01T00:00:00")
        _set(kb, other_new, repo="other/thing", created_at="2026-01-09T00:00:00")
        _set(kb, local_new, created_at="2026-01-05T00:00:00")
        results = kb.search_entries(context_repo="acme/app")
        assert _ids(results) == [local_new, local_old, other_new]

    def test_ties_broken_by_id(self, kb):
        first = kb.add_entry("same second a")
        second = kb.add_entry("same second b")
        _set(kb, first, created_at="2026-01-01T00:00:00")
        _set(kb, second, created_at="2026-01-01T00:00:00")
        assert _ids(kb.search_entries()) == [second, first]


class TestSemanticSearch:

    def test_ranked_ids_then_post_filter(self, kb, semantic):
        a = kb.add_entry("alpha", metadata={"priority": "high"})
        b = kb.add_entry("beta", metadata={"priority": "low"})
        c = kb.add_entry("gamma", metadata={"priority": "high"})
        semantic.enabled = True
        semantic.ranked = [c, b, a]

        assert _ids(kb.search_entries("anything")) == [c, b, a]
        assert _ids(kb.search_entries("anything", priority="high")) == [c, a]
        assert semantic.search_calls[0] == ("anything", 10)

    def test_text_match_not_applied_to_semantic_results(self, kb, semantic):
        a = kb.add_entry("alpha")
        semantic.enabled = True
        semantic.ranked = [a]
        assert _ids(kb.search_entries("no substring match")) == [a]

    def test_empty_ranking_returns_nothing(self, kb, semantic):
        kb.add_entry("alpha")
        semantic.enabled = True
        assert kb.search_entries("anything") == []

    def test_empty_query_skips_semantic(self, kb, semantic):
        a = kb.add_entry("alpha")
        semantic.enabled = True
        assert _ids(kb.search_entries("")) == [a]
        assert semantic.search_calls == []

    def test_failure_falls_back_to_text(self, kb, semantic):
        a = kb.add_entry("alpha")
        kb.add_entry("beta")
        semantic.enabled = True
        semantic.fail = True
        assert _ids(kb.search_entries("alph")) == [a]


class TestBuildQuery:

    def test_no_filters(self):
        where, params = build_where(SearchFilters(), now=NOW)
        assert where == "1"
        assert params == []

    def test_params_in_clause_order(self):
        filters = SearchFilters(query="q", priority="high", recent=2)
        where, params = build_where(filters, now=NOW)
        assert where.startswith("((e.content LIKE")
        assert params == ["%q%", "%q%", "priority", "high", "2026-02-27T12:00:00"]

    def test_limit_is_last_param(self):
        sql, params = build_query(SearchFilters(limit=4), now=NOW)
        assert sql.endswith("LIMIT ?")
        assert params[-1] == 4

    def test_empty_id_list_matches_nothing(self):
        where, _ = build_where(SearchFilters(), now=NOW, ids=[])
        assert where == "0"

    def test_recent_zero_is_inactive(self):
        where, _ = build_where(SearchFilters(recent=0), now=NOW)
        assert where == "1"


class TestSearchFilters:

    @pytest.mark.parametrize("limit", [0, -1])
    def test_invalid_limit(self, limit):
        with pytest.raises(ValidationError):
            SearchFilters(limit=limit)

    def test_negative_recent(self):
        with pytest.raises(ValidationError):
            SearchFilters(recent=-3)

    def test_from_dict_ignores_unknown_and_empty(self):
        filters = filters_from_dict({"type": "go", "bogus": 1, "author": "", "tags": []})
        assert filters.project_type == "go"
        assert filters.author is None
        assert filters.tags == []

    def test_search_entries_rejects_mixed_arguments(self, kb):
        with pytest.raises(ValueError):
            kb.search_entries("text", SearchFilters(query="other"))
