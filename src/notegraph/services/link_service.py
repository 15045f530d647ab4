"""Read-side queries over the link graph."""
import logging
from dataclasses import dataclass
from typing import List, Optional

from notegraph.exceptions import NoteNotFoundError
from notegraph.models.schema import (InternalLink, LinkSearchCriteria, NoteLinks,
                                     NoteRecord)
from notegraph.observability import traced
from notegraph.services.link_extractor import BatchExtractionSummary, LinkExtractor
from notegraph.services.note_source import NoteSource, StoreNoteSource
from notegraph.storage.index_store import IndexStore, StoreConnection
from notegraph.storage.link_repository import LinkRepository

logger = logging.getLogger(__name__)


@dataclass
class LinkMigrationReport:
    """Result of an operator-triggered link re-extraction."""
    skipped: bool
    existing_links: int = 0
    summary: Optional[BatchExtractionSummary] = None


class LinkService:
    """Forward links, backlinks, broken links and link-based note search.

    Every query runs on a read-only connection and therefore sees the
    last committed graph.
    """

    def __init__(
        self,
        store: IndexStore,
        repository: Optional[LinkRepository] = None,
        extractor: Optional[LinkExtractor] = None,
    ):
        self.store = store
        self.repository = repository or LinkRepository()
        self.extractor = extractor or LinkExtractor(store, self.repository)

    def _require_note_id(self, conn: StoreConnection, identifier: str) -> str:
        if self.store.get_note(identifier, conn=conn) is not None:
            return identifier
        resolved = self.store.resolve_target(identifier, conn=conn)
        if resolved is None:
            raise NoteNotFoundError(identifier)
        return resolved

    @traced("get_note_links")
    def get_note_links(self, identifier: str) -> NoteLinks:
        """Outgoing wikilinks, external links and incoming links of a note.

        Raises:
            NoteNotFoundError: If ``identifier`` does not resolve to a note.
        """
        with self.store.connect_read_only() as conn:
            note_id = self._require_note_id(conn, identifier)
            return NoteLinks(
                note_id=note_id,
                outgoing=self.repository.get_outgoing(conn, note_id),
                external=self.repository.get_external(conn, note_id),
                incoming=self.repository.get_incoming(conn, note_id),
            )

    @traced("get_backlinks")
    def get_backlinks(self, identifier: str) -> List[InternalLink]:
        """Resolved links pointing at a note. Broken links are never included.

        Raises:
            NoteNotFoundError: If ``identifier`` does not resolve to a note.
        """
        with self.store.connect_read_only() as conn:
            note_id = self._require_note_id(conn, identifier)
            return self.repository.get_incoming(conn, note_id)

    @traced("find_broken_links")
    def find_broken_links(self) -> List[InternalLink]:
        with self.store.connect_read_only() as conn:
            return self.repository.get_broken(conn)

    @traced("search_by_links")
    def search_by_links(self, criteria: LinkSearchCriteria) -> List[NoteRecord]:
        """Notes matching one link relationship.

        Criteria are not combined: the first non-empty one in the order
        ``links_to``, ``linked_from``, ``external_domains``, ``broken_only``
        is applied and the rest are ignored.
        """
        with self.store.connect_read_only() as conn:
            if criteria.links_to:
                targets = self._resolve_all(conn, criteria.links_to)
                note_ids = self.repository.notes_linking_to(conn, targets)
            elif criteria.linked_from:
                sources = self._resolve_all(conn, criteria.linked_from)
                note_ids = self.repository.notes_linked_from(conn, sources)
            elif criteria.external_domains:
                note_ids = self.repository.notes_with_external_domains(
                    conn, criteria.external_domains
                )
            elif criteria.broken_only:
                note_ids = self.repository.notes_with_broken_links(conn)
            else:
                return []

            notes = []
            for note_id in note_ids:
                record = self.store.get_note(note_id, conn=conn)
                if record is not None:
                    notes.append(record)
            return notes

    def _resolve_all(self, conn: StoreConnection, identifiers: List[str]) -> List[str]:
        resolved = []
        for identifier in identifiers:
            if self.store.get_note(identifier, conn=conn) is not None:
                resolved.append(identifier)
            else:
                note_id = self.store.resolve_target(identifier, conn=conn)
                # Unknown identifiers still go through as literal ids
                resolved.append(note_id or identifier)
        return resolved

    @traced("migrate_links")
    def migrate_links(
        self,
        note_source: Optional[NoteSource] = None,
        force: bool = False,
        batch_size: Optional[int] = None,
    ) -> LinkMigrationReport:
        """Re-extract links for every note from ``note_source``.

        Refuses when links already exist unless ``force`` is set. Defaults
        to re-reading the notes held in the store.
        """
        with self.store.connect_read_only() as conn:
            existing = self.repository.count_internal_links(conn)
        if existing > 0 and not force:
            logger.info(
                f"Skipping link migration: {existing} links already stored "
                "(use force to re-extract)"
            )
            return LinkMigrationReport(skipped=True, existing_links=existing)

        source = note_source or StoreNoteSource(self.store)
        pairs = [(note.id, note.content) for note in source.iter_notes()]
        summary = self.extractor.migrate_link_extraction(pairs, batch_size=batch_size)
        return LinkMigrationReport(
            skipped=False, existing_links=existing, summary=summary
        )
