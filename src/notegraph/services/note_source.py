"""Note sources: where migrations and suggestions read notes from."""
import logging
from typing import Iterable, Iterator, List, Optional, Protocol, runtime_checkable

from notegraph.models.schema import NoteLookupResult, SourceNote
from notegraph.storage.fts_index import FtsIndex
from notegraph.storage.index_store import IndexStore

logger = logging.getLogger(__name__)


@runtime_checkable
class NoteSource(Protocol):
    """The collaborator that owns the authoritative notes.

    ``iter_notes`` feeds rebuilds and batch link extraction. ``get_note``
    and ``search_notes`` back wikilink validation and link suggestions.
    """

    def iter_notes(self) -> Iterable[SourceNote]:
        ...

    def get_note(self, identifier: str) -> Optional[NoteLookupResult]:
        ...

    def search_notes(
        self, query: str, note_type: Optional[str] = None, limit: int = 10
    ) -> List[NoteLookupResult]:
        ...


class StoreNoteSource:
    """A note source backed by the index store itself."""

    def __init__(self, store: IndexStore, fts_index: Optional[FtsIndex] = None):
        self.store = store
        self.fts_index = fts_index or FtsIndex(store)

    def iter_notes(self) -> Iterator[SourceNote]:
        for note_id in self.store.list_note_ids():
            record = self.store.get_note(note_id)
            if record is None:
                # Removed since the id list was read
                continue
            yield SourceNote(record=record, metadata=self.store.get_metadata(note_id))

    def get_note(self, identifier: str) -> Optional[NoteLookupResult]:
        """Look a note up by id, title or filename."""
        record = self.store.get_note(identifier)
        if record is None:
            resolved = self.store.resolve_target(identifier)
            record = self.store.get_note(resolved) if resolved else None
        if record is None:
            return None
        return NoteLookupResult(
            id=record.id,
            title=record.title,
            note_type=record.note_type,
            filename=record.filename,
        )

    def search_notes(
        self, query: str, note_type: Optional[str] = None, limit: int = 10
    ) -> List[NoteLookupResult]:
        return self.fts_index.search(query, note_type=note_type, limit=limit)
