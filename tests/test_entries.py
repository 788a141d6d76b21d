"""
Tests for entry add/get/delete on KnowledgeBase.

Covers atomicity of add, the tag usage invariant (explicit links counted,
auto-suggested links not), explicit cascade on delete, and best-effort
collaborators.
"""

import pytest

from knowhow.errors import NotFoundError, ValidationError

from conftest import (
    FailingProvenance,
    MockEmbeddingProvider,
    MockSemanticSearch,
    make_kb,
)


def _usage(kb, name):
    tag = kb.tags.get_by_name(name)
    return tag.usage_count if tag else None


def _assert_usage_invariant(kb):
    """usage_count == number of explicit links, for every tag."""
    rows = kb.store.connection.execute("""
        SELECT t.name, t.usage_count,
               (SELECT COUNT(*) FROM entry_tags et
                WHERE et.tag_id = t.id AND et.auto = 0) AS explicit_links
        FROM tags t
    """).fetchall()
    for row in rows:
        assert row["usage_count"] == row["explicit_links"], row["name"]


class TestAddEntry:

    def test_add_and_get(self, kb):
        entry_id = kb.add_entry(
            "Use connection pooling for postgres",
            tags=["db-notes", "postgres"],
            metadata={"priority": "high", "estimate": 3},
        )
        entry = kb.get_entry(entry_id)
        assert entry is not None
        assert entry.content == "Use connection pooling for postgres"
        assert entry.tag_names[:2] == ["db-notes", "postgres"]
        assert entry.priority == "high"
        assert entry.get_metadata_value("estimate") == 3
        assert entry.repo == "acme/app"
        assert entry.commit_sha == "abc1234"
        assert entry.created_at and entry.updated_at

    def test_embedding_is_stored(self, kb):
        entry_id = kb.add_entry("Vectors are opaque")
        expected = MockEmbeddingProvider().generate_embedding("Vectors are opaque")
        assert kb.get_entry(entry_id).embedding == expected

    @pytest.mark.parametrize("content", ["", "   ", "\n\t"])
    def test_empty_content_rejected(self, kb, content):
        with pytest.raises(ValidationError):
            kb.add_entry(content, tags=["x"])
        assert kb.count() == 0
        assert kb.tags.get_by_name("x") is None

    def test_tags_trimmed_deduplicated_and_blanks_skipped(self, kb):
        entry_id = kb.add_entry("Notes on caching", tags=["cache", " cache ", "", "   ", "cache"])
        assert kb.get_entry(entry_id).tag_names == ["cache"]
        assert _usage(kb, "cache") == 1

    def test_tag_names_are_case_sensitive(self, kb):
        kb.add_entry("Mixed case", tags=["Cache", "cache"])
        assert _usage(kb, "Cache") == 1
        assert _usage(kb, "cache") == 1

    def test_fix_login_bug_counts_bug_once(self, kb):
        entry_id = kb.add_entry("Fix login bug", tags=["bug"])
        assert _usage(kb, "bug") == 1
        assert kb.get_entry(entry_id).tag_names.count("bug") == 1
        _assert_usage_invariant(kb)

    def test_auto_suggested_tags_are_not_counted(self, kb):
        entry_id = kb.add_entry("Slow database query on the reports page")
        names = kb.get_entry(entry_id).tag_names
        assert "performance" in names
        assert "database" in names
        assert _usage(kb, "performance") == 0
        assert _usage(kb, "database") == 0
        _assert_usage_invariant(kb)

    def test_explicit_tag_upgrades_auto_link(self, kb):
        entry_id = kb.add_entry("Slow database query")
        assert _usage(kb, "database") == 0
        linked = kb.tag_entry(entry_id, ["database"])
        assert [t.name for t in linked] == ["database"]
        assert _usage(kb, "database") == 1
        # Re-tagging is a no-op
        assert kb.tag_entry(entry_id, ["database"]) == []
        assert _usage(kb, "database") == 1
        _assert_usage_invariant(kb)

    def test_usage_counts_entries(self, kb):
        for i in range(3):
            kb.add_entry(f"note {i}", tags=["shared"])
        assert _usage(kb, "shared") == 3

    def test_missing_collection_rolls_back(self, kb):
        with pytest.raises(NotFoundError):
            kb.add_entry("orphan", tags=["t"], collection_id=999)
        assert kb.count() == 0
        assert kb.tags.get_by_name("t") is None

    def test_metadata_failure_rolls_back_entry_and_tags(self, kb):
        with pytest.raises(ValidationError):
            kb.add_entry("half written", tags=["atomic"], metadata={"": "bad key"})
        assert kb.count() == 0
        assert kb.tags.get_by_name("atomic") is None

    def test_collection_assignment(self, kb):
        coll = kb.create_collection("Runbooks")
        entry_id = kb.add_entry("Restart the worker", collection_id=coll.id)
        entry = kb.get_entry(entry_id)
        assert entry.collection_id == coll.id
        assert entry.collection.name == "Runbooks"


class TestCollaboratorFailures:
    """Collaborator failures never abort an add."""

    def test_provenance_failure(self, tmp_path):
        kb = make_kb(tmp_path, provenance=FailingProvenance())
        try:
            entry = kb.get_entry(kb.add_entry("still saved"))
            assert entry.git_context == {
                "repo": None, "branch": None, "commit_sha": None,
                "author": None, "project_type": None,
            }
        finally:
            kb.close()

    def test_embedding_failure(self, tmp_path):
        kb = make_kb(tmp_path, embedding=MockEmbeddingProvider(fail=True))
        try:
            entry = kb.get_entry(kb.add_entry("no vector"))
            assert entry.embedding is None
        finally:
            kb.close()

    def test_semantic_failure(self, tmp_path):
        kb = make_kb(tmp_path, semantic=MockSemanticSearch(fail=True))
        try:
            entry_id = kb.add_entry("Fix login bug", tags=["bug"])
            entry = kb.get_entry(entry_id)
            assert entry.tag_names == ["bug"]
            assert entry.semantically_similar == []
        finally:
            kb.close()


class TestDeleteEntry:

    def test_delete_missing_returns_false(self, kb):
        assert kb.delete_entry(12345) is False

    def test_delete_decrements_each_tag_once(self, kb):
        keep_id = kb.add_entry("keeper", tags=["a", "b"])
        gone_id = kb.add_entry("goner", tags=["a", "b", "c"])
        assert (_usage(kb, "a"), _usage(kb, "b"), _usage(kb, "c")) == (2, 2, 1)

        assert kb.delete_entry(gone_id) is True
        assert (_usage(kb, "a"), _usage(kb, "b"), _usage(kb, "c")) == (1, 1, 0)
        assert kb.get_entry(gone_id) is None
        assert kb.get_entry(keep_id).tag_names == ["a", "b"]
        _assert_usage_invariant(kb)

    def test_delete_leaves_auto_tags_at_zero(self, kb):
        entry_id = kb.add_entry("Fix login bug", tags=["bug"], metadata={"status": "open"})
        other = kb.add_entry("Another security token leak")
        kb.delete_entry(other)
        assert _usage(kb, "security") == 0
        kb.delete_entry(entry_id)
        assert _usage(kb, "bug") == 0
        _assert_usage_invariant(kb)

    def test_delete_cascades_metadata_and_relationships(self, kb):
        a = kb.add_entry("A", metadata={"priority": "high"})
        b = kb.add_entry("B")
        c = kb.add_entry("C")
        kb.relate(a, b, "depends_on", bidirectional=True)
        kb.relate(c, a, "references")
        kb.relate(b, c, "extends")

        kb.delete_entry(a)

        assert kb.metadata.list_for_entry(a) == []
        assert kb.relationships.edges_from(a) == []
        assert kb.relationships.edges_to(a) == []
        assert [r.to_entry_id for r in kb.relationships.edges_from(b)] == [c]
        assert kb.relationships.edges_from(c) == []

    def test_tag_rows_survive_delete(self, kb):
        entry_id = kb.add_entry("only one", tags=["lonely"])
        kb.delete_entry(entry_id)
        tag = kb.tags.get_by_name("lonely")
        assert tag is not None
        assert tag.usage_count == 0


class TestGetEntry:

    def test_missing(self, kb):
        assert kb.get_entry(42) is None

    def test_tag_related_ranked_by_shared_tags(self, kb):
        target = kb.add_entry("target", tags=["x", "y", "z"])
        one = kb.add_entry("one shared", tags=["x"])
        three = kb.add_entry("three shared", tags=["x", "y", "z"])
        two = kb.add_entry("two shared", tags=["y", "z"])
        kb.add_entry("unrelated", tags=["q"])

        related = kb.get_entry(target).tag_related
        assert [e.id for e in related] == [three, two, one]
        assert target not in [e.id for e in related]

    def test_tag_related_limited_to_three(self, kb):
        target = kb.add_entry("target", tags=["x"])
        for i in range(5):
            kb.add_entry(f"other {i}", tags=["x"])
        assert len(kb.get_entry(target).tag_related) == 3

    def test_semantically_similar_from_provider(self, kb, semantic):
        a = kb.add_entry("alpha")
        b = kb.add_entry("beta")
        c = kb.add_entry("gamma")
        semantic.similar = [c, a, 999, b]
        similar = kb.get_entry(a).semantically_similar
        assert [e.id for e in similar] == [c, b]


class TestMetadataValues:

    def test_set_and_get(self, kb):
        entry_id = kb.add_entry("with metadata")
        kb.set_metadata_value(entry_id, "points", 5)
        kb.set_metadata_value(entry_id, "reviewed", True)
        assert kb.get_metadata_value(entry_id, "points") == 5
        assert kb.get_metadata_value(entry_id, "reviewed") is True
        assert kb.get_metadata_value(entry_id, "missing", "fallback") == "fallback"

    def test_overwrite_replaces_value_and_type(self, kb):
        entry_id = kb.add_entry("with metadata", metadata={"points": 5})
        kb.set_metadata_value(entry_id, "points", "many")
        assert kb.get_metadata_value(entry_id, "points") == "many"
        assert len(kb.metadata.list_for_entry(entry_id)) == 1

    def test_set_on_missing_entry(self, kb):
        with pytest.raises(NotFoundError):
            kb.set_metadata_value(999, "k", "v")

    def test_defaults_for_priority_and_status(self, kb):
        entry = kb.get_entry(kb.add_entry("plain"))
        assert entry.priority == "medium"
        assert entry.status == "open"
        assert entry.is_todo is False
