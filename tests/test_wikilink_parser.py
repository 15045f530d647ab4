"""Tests for wikilink parsing and rewriting helpers."""
import pytest

from notegraph.models.schema import NoteLookupResult
from notegraph.services.wikilink_parser import (count_wikilinks, create_wikilink,
                                                find_linkable_text,
                                                is_inside_wikilink, parse_target,
                                                parse_wikilinks, remove_wikilinks,
                                                replace_wikilinks)


def lookup(note_type, filename, title):
    return NoteLookupResult(
        id=f"{note_type}/{filename}", title=title, note_type=note_type, filename=filename
    )


class TestParseWikilinks:
    """Tests for parse_wikilinks."""

    def test_plain_and_display_forms(self):
        links = parse_wikilinks("See [[Alpha]] and [[project/beta|the beta]].")

        assert [(l.target, l.display) for l in links] == [
            ("Alpha", None), ("project/beta", "the beta"),
        ]
        assert links[0].raw == "[[Alpha]]"
        assert links[1].text == "the beta"

    def test_positions_and_line_numbers(self):
        content = "first\nsecond [[Target]]"
        link = parse_wikilinks(content)[0]
        assert content[link.start:link.end] == "[[Target]]"
        assert link.line_number == 2

    def test_whitespace_trimmed_and_blank_display_dropped(self):
        link = parse_wikilinks("[[  Alpha  |   ]]")[0]
        assert link.target == "Alpha"
        assert link.display is None

    @pytest.mark.parametrize("text", ["[[]]", "[Alpha]", "[[Alpha]", "no links"])
    def test_not_links(self, text):
        assert parse_wikilinks(text) == []

    def test_count_and_remove(self):
        content = "[[A]] then [[b/c|Sea]]"
        assert count_wikilinks(content) == 2
        assert remove_wikilinks(content) == "A then Sea"


class TestTargets:
    """Tests for target parsing and link creation."""

    @pytest.mark.parametrize(
        "target, expected",
        [
            ("project/plan.md", ("project", "plan.md")),
            ("plan", (None, "plan")),
            ("a/b/c", (None, "a/b/c")),
        ],
    )
    def test_parse_target(self, target, expected):
        assert parse_target(target) == expected

    def test_create_wikilink(self):
        assert create_wikilink("project", "plan.md") == "[[project/plan.md]]"
        assert create_wikilink("project", "plan.md", "Plan") == "[[project/plan.md|Plan]]"


class TestReplaceWikilinks:
    """Tests for replace_wikilinks."""

    def test_replace_by_raw_and_target(self):
        content = "[[Old]] and [[Other|x]] and [[Old]]"
        updated = replace_wikilinks(content, {"Old": "[[New]]", "[[Other|x]]": "[[O2|x]]"})
        assert updated == "[[New]] and [[O2|x]] and [[New]]"

    def test_replacements_of_different_length_keep_offsets(self):
        content = "[[a]][[b]][[c]]"
        updated = replace_wikilinks(content, {"a": "[[aaaaaa]]", "b": "[[]]x", "c": "C"})
        assert updated == "[[aaaaaa]][[]]xC"


class TestFindLinkableText:
    """Tests for spotting mentions of note titles."""

    def test_whole_word_case_insensitive(self):
        notes = [lookup("project", "plan.md", "Plan")]
        found = find_linkable_text("The plan. A planet. PLAN!", notes)
        assert [(o.text, o.start) for o in found] == [("plan", 4), ("PLAN", 20)]
        assert found[0].best.note_id == "project/plan.md"

    def test_skips_short_titles(self):
        assert find_linkable_text("an ox", [lookup("g", "ox.md", "ox")]) == []

    def test_skips_text_inside_wikilinks(self):
        notes = [lookup("project", "plan.md", "Plan")]
        found = find_linkable_text("[[Plan]] and plan", notes)
        assert [o.start for o in found] == [13]
        assert is_inside_wikilink(parse_wikilinks("[[Plan]]"), 2, 6)

    def test_longer_span_first_at_same_start(self):
        notes = [lookup("g", "a.md", "Weekly"), lookup("g", "b.md", "Weekly Standup")]
        found = find_linkable_text("Weekly Standup notes", notes)
        assert [o.text for o in found] == ["Weekly Standup", "Weekly"]

    def test_scorer_orders_suggestions(self):
        notes = [lookup("a", "x.md", "Topic"), lookup("b", "y.md", "topic")]

        def scorer(query, title, filename):
            return 0.9 if filename == "y.md" else 0.5

        found = find_linkable_text("a topic", notes, scorer=scorer)
        assert [s.note_id for s in found[0].suggestions] == ["b/y.md", "a/x.md"]
