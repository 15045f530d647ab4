"""Write path: keeps notes, fingerprints and the link graph consistent."""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from notegraph.content_hash import require_content_hash, validate_content_hash
from notegraph.exceptions import NoteNotFoundError, ValidationError
from notegraph.models.schema import NoteRecord
from notegraph.observability import traced
from notegraph.services.link_extractor import (BatchExtractionSummary, LinkExtractor,
                                               ProgressCallback, RenameUpdateSummary)
from notegraph.services.migration_manager import rebuild_from_source
from notegraph.services.note_source import NoteSource
from notegraph.storage.index_store import IndexStore, StoreConnection
from notegraph.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class RenameResult:
    record: NoteRecord
    resolved_links: int
    updates: RenameUpdateSummary


@dataclass
class ReindexSummary:
    notes_indexed: int
    links: BatchExtractionSummary


class IndexService:
    """Applies note changes to the index store.

    Every write runs in one transaction covering the note row, its
    metadata and its links, so readers never see a note without its edges.
    """

    def __init__(self, store: IndexStore, extractor: Optional[LinkExtractor] = None):
        self.store = store
        self.extractor = extractor or LinkExtractor(store)

    def _require(self, conn: StoreConnection, identifier: str) -> NoteRecord:
        record = self.store.get_note(identifier, conn=conn)
        if record is None:
            note_id = self.store.resolve_target(identifier, conn=conn)
            record = self.store.get_note(note_id, conn=conn) if note_id else None
        if record is None:
            raise NoteNotFoundError(identifier)
        return record

    @traced("index_note")
    def index_note(
        self, record: NoteRecord, metadata: Optional[Dict[str, Any]] = None
    ) -> NoteRecord:
        """Insert or refresh a note and its outgoing links.

        Broken links elsewhere that name this note are attached to it.
        """
        with self.store.connect() as conn:
            stored = self.store.upsert_note(record, metadata, conn=conn)
            self.extractor.extract_and_store(stored.id, stored.content, conn=conn)
            self.extractor.resolve_broken_links_for(stored.id, conn=conn)
        logger.debug(f"Indexed note {stored.id}")
        return stored

    @traced("update_note_content")
    def update_note_content(
        self, identifier: str, content: str, content_hash: Optional[str]
    ) -> NoteRecord:
        """Replace a note's content if the caller saw the latest version.

        Raises:
            MissingFingerprintError: If ``content_hash`` is not given.
            ContentConflictError: If the note changed since it was read.
            NoteNotFoundError: If the note does not exist.
        """
        provided = require_content_hash(content_hash, "update_note_content")
        with self.store.connect() as conn:
            current = self._require(conn, identifier)
            validate_content_hash(current.content or "", provided, note_id=current.id)
            stored = self.store.upsert_note(
                current.model_copy(update={"content": content, "updated": utc_now()}),
                conn=conn,
            )
            self.extractor.extract_and_store(stored.id, content, conn=conn)
        logger.info(f"Updated content of note {stored.id}")
        return stored

    @traced("rename_note")
    def rename_note(
        self, identifier: str, new_title: str, content_hash: Optional[str]
    ) -> RenameResult:
        """Change a note's title and rewrite wikilinks that used the old one.

        Raises:
            MissingFingerprintError: If ``content_hash`` is not given.
            ContentConflictError: If the note changed since it was read.
            NoteNotFoundError: If the note does not exist.
            ValidationError: If ``new_title`` is blank.
        """
        provided = require_content_hash(content_hash, "rename_note")
        new_title = (new_title or "").strip()
        if not new_title:
            raise ValidationError("Title must not be empty", field="title", value=new_title)

        with self.store.connect() as conn:
            current = self._require(conn, identifier)
            validate_content_hash(current.content or "", provided, note_id=current.id)
            old_title = current.title
            stored = self.store.upsert_note(
                current.model_copy(update={"title": new_title, "updated": utc_now()}),
                conn=conn,
            )
            resolved = self.extractor.resolve_broken_links_for(stored.id, conn=conn)
            updates = self.extractor.update_wikilinks_for_renamed_note(
                stored.id, old_title, new_title, conn=conn
            )
        logger.info(f"Renamed note {stored.id}: {old_title!r} -> {new_title!r}")
        return RenameResult(record=stored, resolved_links=resolved, updates=updates)

    @traced("delete_note")
    def delete_note(self, identifier: str) -> str:
        """Remove a note. Links that pointed at it become broken links.

        Returns the id of the deleted note.
        """
        with self.store.connect() as conn:
            record = self._require(conn, identifier)
            self.store.remove_note(record.id, conn=conn)
        logger.info(f"Deleted note {record.id}")
        return record.id

    @traced("reindex_from_source")
    def reindex_from_source(
        self,
        note_source: NoteSource,
        progress_callback: Optional[ProgressCallback] = None,
        batch_size: Optional[int] = None,
    ) -> ReindexSummary:
        """Empty the store and rebuild it, links included, from ``note_source``."""
        pairs = rebuild_from_source(self.store, note_source, batch_size)
        links = self.extractor.migrate_link_extraction(
            pairs, progress_callback=progress_callback
        )
        return ReindexSummary(notes_indexed=len(pairs), links=links)
