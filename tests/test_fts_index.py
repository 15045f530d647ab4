"""Tests for full-text search over the index store."""
import pytest

from notegraph.storage.fts_index import FtsIndex
from tests.fakes import make_record


@pytest.fixture
def searchable(store):
    store.upsert_note(make_record("project", "garden.md", "Garden Plan",
                                  "Plant tomatoes in spring", minutes=1))
    store.upsert_note(make_record("daily", "2024-03-01.md", "March Log",
                                  "Bought tomato seeds", minutes=2))
    store.upsert_note(make_record("project", "budget.md", "Budget",
                                  "100% of costs (estimated)", minutes=3))
    return store


class TestToFtsQuery:
    """Tests for translating user text to MATCH syntax."""

    @pytest.mark.parametrize(
        "query, expected",
        [
            ("tomato", "tomato*"),
            ("to", "to"),
            ("tomato*", "tomato*"),
            ("a (b)", None),
            ('say "hi"', None),
            ("well-known", None),
            ("title:x", None),
        ],
    )
    def test_translation(self, query, expected):
        assert FtsIndex.to_fts_query(query) == expected


class TestSearch:
    """Tests for FtsIndex.search."""

    def test_prefix_match_over_content(self, searchable, fts_index):
        ids = {r.id for r in fts_index.search("tomato")}
        assert ids == {"project/garden.md", "daily/2024-03-01.md"}

    def test_matches_title(self, searchable, fts_index):
        assert [r.id for r in fts_index.search("March")] == ["daily/2024-03-01.md"]

    def test_type_filter(self, searchable, fts_index):
        results = fts_index.search("tomato", note_type="project")
        assert [r.id for r in results] == ["project/garden.md"]

    def test_empty_query_lists_recent_first(self, searchable, fts_index):
        results = fts_index.search("", limit=2)
        assert [r.id for r in results] == ["project/budget.md", "daily/2024-03-01.md"]

    def test_unsafe_query_uses_like_fallback(self, searchable, fts_index):
        results = fts_index.search("(estimated)")
        assert [r.id for r in results] == ["project/budget.md"]

    def test_like_wildcards_are_literal(self, searchable, fts_index):
        assert [r.id for r in fts_index.search("100%")] == ["project/budget.md"]
        assert fts_index.search("1_0%") == []

    def test_result_fields(self, searchable, fts_index):
        result = fts_index.search("Budget")[0]
        assert result.title == "Budget"
        assert result.note_type == "project"
        assert result.filename == "budget.md"
