"""Tests for link graph queries."""
import pytest

from notegraph.exceptions import NoteNotFoundError
from notegraph.models.schema import LinkSearchCriteria


@pytest.fixture
def graph(add_note):
    """Three notes: hub links to spoke and to a missing note, spoke links back."""
    add_note("project", "hub.md", "Hub",
             "Start [[Spoke]]\nthen [[Missing Note|later]]\nsee https://docs.example.com/a")
    add_note("project", "spoke.md", "Spoke",
             "back to [[project/hub|the hub]]\n![pic](https://img.example.org/p.png)")
    add_note("daily", "today.md", "Today", "nothing linked")


class TestGetNoteLinks:
    """Tests for LinkService.get_note_links."""

    def test_outgoing_external_and_incoming(self, graph, link_service):
        links = link_service.get_note_links("project/hub.md")

        assert links.note_id == "project/hub.md"
        assert [(l.target_title, l.target_note_id, l.line_number) for l in links.outgoing] == [
            ("Spoke", "project/spoke.md", 1),
            ("Missing Note", None, 2),
        ]
        assert links.outgoing[1].link_text == "later"
        assert [e.url for e in links.external] == ["https://docs.example.com/a"]
        assert [(l.source_note_id, l.source_title) for l in links.incoming] == [
            ("project/spoke.md", "Spoke")
        ]

    def test_lookup_by_title(self, graph, link_service):
        assert link_service.get_note_links("Spoke").note_id == "project/spoke.md"

    def test_unknown_note_raises(self, graph, link_service):
        with pytest.raises(NoteNotFoundError):
            link_service.get_note_links("nowhere/none.md")


class TestBacklinksAndBrokenLinks:
    """Tests for backlinks and broken link queries."""

    def test_backlinks(self, graph, link_service):
        backlinks = link_service.get_backlinks("Hub")
        assert [l.source_note_id for l in backlinks] == ["project/spoke.md"]

    def test_backlinks_unknown_note_raises(self, link_service):
        with pytest.raises(NoteNotFoundError):
            link_service.get_backlinks("Nobody")

    def test_find_broken_links(self, graph, link_service):
        broken = link_service.find_broken_links()
        assert [(l.source_note_id, l.target_title) for l in broken] == [
            ("project/hub.md", "Missing Note")
        ]

    def test_deleting_target_breaks_inbound_links(self, graph, link_service, index_service):
        """Inbound edges survive target deletion as broken links."""
        index_service.delete_note("project/spoke.md")

        broken = link_service.find_broken_links()
        assert [(l.source_note_id, l.target_title) for l in broken] == [
            ("project/hub.md", "Spoke"),
            ("project/hub.md", "Missing Note"),
        ]
        assert link_service.get_backlinks("project/hub.md") == []
        with pytest.raises(NoteNotFoundError):
            link_service.get_backlinks("project/spoke.md")

    def test_creating_missing_note_resolves_broken_link(self, graph, link_service, add_note):
        add_note("general", "missing.md", "Missing Note")

        assert link_service.find_broken_links() == []
        backlinks = link_service.get_backlinks("general/missing.md")
        assert [l.source_note_id for l in backlinks] == ["project/hub.md"]


class TestSearchByLinks:
    """Tests for LinkService.search_by_links."""

    def test_links_to(self, graph, link_service):
        notes = link_service.search_by_links(LinkSearchCriteria(links_to=["Spoke"]))
        assert [n.id for n in notes] == ["project/hub.md"]

    def test_linked_from(self, graph, link_service):
        notes = link_service.search_by_links(LinkSearchCriteria(linked_from="project/hub.md"))
        assert [n.id for n in notes] == ["project/spoke.md"]

    def test_external_domain_substring(self, graph, link_service):
        notes = link_service.search_by_links(
            LinkSearchCriteria(external_domains=["example.org"])
        )
        assert [n.id for n in notes] == ["project/spoke.md"]

    def test_domain_wildcards_are_literal(self, graph, link_service):
        criteria = LinkSearchCriteria(external_domains=["%"])
        assert link_service.search_by_links(criteria) == []

    def test_broken_only(self, graph, link_service):
        notes = link_service.search_by_links(LinkSearchCriteria(broken_only=True))
        assert [n.id for n in notes] == ["project/hub.md"]

    def test_first_criterion_wins(self, graph, link_service):
        """Later criteria are ignored once an earlier one is set."""
        criteria = LinkSearchCriteria(links_to=["Hub"], broken_only=True)
        notes = link_service.search_by_links(criteria)
        assert [n.id for n in notes] == ["project/spoke.md"]

    def test_empty_criteria(self, graph, link_service):
        criteria = LinkSearchCriteria()
        assert criteria.is_empty()
        assert link_service.search_by_links(criteria) == []


class TestMigrateLinks:
    """Tests for operator-triggered link re-extraction."""

    def test_refuses_when_links_exist(self, graph, link_service):
        report = link_service.migrate_links()
        assert report.skipped is True
        assert report.existing_links == 3
        assert report.summary is None

    def test_force_re_extracts_from_store(self, graph, link_service, store):
        with store.connect() as conn:
            conn.run("DELETE FROM external_links")

        report = link_service.migrate_links(force=True)

        assert report.skipped is False
        assert report.summary.processed == 3
        assert report.summary.external_links_stored == 2
        assert store.get_stats()["internal_links"] == 3

    def test_runs_when_no_links(self, add_note, link_service):
        add_note("general", "a.md", "Alpha", "no links here")
        report = link_service.migrate_links()
        assert report.skipped is False
        assert report.summary.processed == 1
