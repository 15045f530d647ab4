"""Persistence and queries for the link graph tables."""
import logging
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import aliased

from notegraph.models.db_models import DBExternalLink, DBNote, DBNoteLink
from notegraph.models.schema import (ExternalLinkRecord, ExternalLinkType,
                                     ExtractedExternalLink, ExtractedWikilink,
                                     InternalLink)
from notegraph.storage.index_store import StoreConnection
from notegraph.utils import escape_like_pattern, utc_now

logger = logging.getLogger(__name__)

_SourceNote = aliased(DBNote, name="source_note")
_TargetNote = aliased(DBNote, name="target_note")


class LinkRepository:
    """Reads and writes ``note_links`` and ``external_links``.

    Every method works inside a caller-supplied :class:`StoreConnection`
    so that several operations can share one transaction.
    """

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def clear_links(self, conn: StoreConnection, note_id: str) -> int:
        """Delete every edge owned by ``note_id``. Returns rows removed."""
        session = conn.session
        removed = session.execute(
            delete(DBNoteLink).where(DBNoteLink.source_note_id == note_id)
        ).rowcount
        removed += session.execute(
            delete(DBExternalLink).where(DBExternalLink.note_id == note_id)
        ).rowcount
        return removed

    def insert_wikilinks(
        self,
        conn: StoreConnection,
        source_note_id: str,
        links: Iterable[ExtractedWikilink],
        resolved_ids: Sequence[Optional[str]],
    ) -> int:
        """Insert wikilink edges; ``resolved_ids`` parallels ``links``."""
        now = utc_now()
        count = 0
        for link, target_id in zip(links, resolved_ids):
            conn.session.add(
                DBNoteLink(
                    source_note_id=source_note_id,
                    target_note_id=target_id,
                    target_title=link.target,
                    link_text=link.link_text,
                    line_number=link.line_number,
                    created=now,
                )
            )
            count += 1
        conn.session.flush()
        return count

    def insert_external_links(
        self,
        conn: StoreConnection,
        note_id: str,
        links: Iterable[ExtractedExternalLink],
    ) -> int:
        now = utc_now()
        count = 0
        for link in links:
            conn.session.add(
                DBExternalLink(
                    note_id=note_id,
                    url=link.url,
                    title=link.title,
                    line_number=link.line_number,
                    link_type=link.link_type.value,
                    created=now,
                )
            )
            count += 1
        conn.session.flush()
        return count

    def attach_broken_links(
        self, conn: StoreConnection, target_note_id: str, titles: Sequence[str]
    ) -> int:
        """Point broken edges whose written target is in ``titles`` at a note.

        Matching is case-insensitive, like title resolution.
        """
        wanted = {t.lower() for t in titles if t}
        if not wanted:
            return 0
        result = conn.session.execute(
            update(DBNoteLink)
            .where(DBNoteLink.target_note_id.is_(None))
            .where(func.lower(DBNoteLink.target_title).in_(wanted))
            .values(target_note_id=target_note_id)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_outgoing(self, conn: StoreConnection, note_id: str) -> List[InternalLink]:
        """Wikilinks written in ``note_id``, in line order."""
        query = (
            select(DBNoteLink, _TargetNote.title)
            .outerjoin(_TargetNote, _TargetNote.id == DBNoteLink.target_note_id)
            .where(DBNoteLink.source_note_id == note_id)
            .order_by(DBNoteLink.line_number, DBNoteLink.id)
        )
        return [
            self._to_internal(link, target_note_title=title)
            for link, title in conn.session.execute(query).all()
        ]

    def get_incoming(self, conn: StoreConnection, note_id: str) -> List[InternalLink]:
        """Resolved wikilinks pointing at ``note_id``. Broken edges never match."""
        query = (
            select(DBNoteLink, _SourceNote.title)
            .join(_SourceNote, _SourceNote.id == DBNoteLink.source_note_id)
            .where(DBNoteLink.target_note_id == note_id)
            .order_by(DBNoteLink.source_note_id, DBNoteLink.line_number, DBNoteLink.id)
        )
        return [
            self._to_internal(link, source_title=title)
            for link, title in conn.session.execute(query).all()
        ]

    def get_external(
        self, conn: StoreConnection, note_id: str
    ) -> List[ExternalLinkRecord]:
        query = (
            select(DBExternalLink)
            .where(DBExternalLink.note_id == note_id)
            .order_by(DBExternalLink.line_number, DBExternalLink.id)
        )
        return [
            ExternalLinkRecord(
                id=link.id,
                note_id=link.note_id,
                url=link.url,
                title=link.title,
                line_number=link.line_number,
                link_type=ExternalLinkType(link.link_type),
                created=link.created,
            )
            for link in conn.session.scalars(query).all()
        ]

    def get_broken(self, conn: StoreConnection) -> List[InternalLink]:
        """Every edge with no resolved target, by source then line."""
        query = (
            select(DBNoteLink, _SourceNote.title)
            .join(_SourceNote, _SourceNote.id == DBNoteLink.source_note_id)
            .where(DBNoteLink.target_note_id.is_(None))
            .order_by(DBNoteLink.source_note_id, DBNoteLink.line_number, DBNoteLink.id)
        )
        return [
            self._to_internal(link, source_title=title)
            for link, title in conn.session.execute(query).all()
        ]

    def get_referencing_sources(
        self, conn: StoreConnection, note_id: str, title: str
    ) -> List[str]:
        """Notes with an edge resolved to ``note_id`` or written as ``title``."""
        query = (
            select(DBNoteLink.source_note_id)
            .where(
                or_(
                    DBNoteLink.target_note_id == note_id,
                    DBNoteLink.target_title == title,
                )
            )
            .distinct()
            .order_by(DBNoteLink.source_note_id)
        )
        return list(conn.session.scalars(query).all())

    def count_internal_links(self, conn: StoreConnection) -> int:
        return conn.session.scalar(select(func.count()).select_from(DBNoteLink)) or 0

    # ------------------------------------------------------------------
    # Relationship search
    # ------------------------------------------------------------------

    def notes_linking_to(self, conn: StoreConnection, target_ids: Sequence[str]) -> List[str]:
        query = (
            select(DBNoteLink.source_note_id)
            .where(DBNoteLink.target_note_id.in_(list(target_ids)))
            .distinct()
            .order_by(DBNoteLink.source_note_id)
        )
        return list(conn.session.scalars(query).all())

    def notes_linked_from(self, conn: StoreConnection, source_ids: Sequence[str]) -> List[str]:
        query = (
            select(DBNoteLink.target_note_id)
            .where(DBNoteLink.source_note_id.in_(list(source_ids)))
            .where(DBNoteLink.target_note_id.is_not(None))
            .distinct()
            .order_by(DBNoteLink.target_note_id)
        )
        return list(conn.session.scalars(query).all())

    def notes_with_external_domains(
        self, conn: StoreConnection, domains: Sequence[str]
    ) -> List[str]:
        """Notes with an external URL containing any of ``domains``.

        Plain substring match on the URL text; LIKE wildcards in the input
        are treated literally.
        """
        conditions = [
            DBExternalLink.url.like(f"%{escape_like_pattern(d)}%", escape="\\")
            for d in domains
            if d
        ]
        if not conditions:
            return []
        query = (
            select(DBExternalLink.note_id)
            .where(or_(*conditions))
            .distinct()
            .order_by(DBExternalLink.note_id)
        )
        return list(conn.session.scalars(query).all())

    def notes_with_broken_links(self, conn: StoreConnection) -> List[str]:
        query = (
            select(DBNoteLink.source_note_id)
            .where(DBNoteLink.target_note_id.is_(None))
            .distinct()
            .order_by(DBNoteLink.source_note_id)
        )
        return list(conn.session.scalars(query).all())

    @staticmethod
    def _to_internal(
        link: DBNoteLink,
        source_title: Optional[str] = None,
        target_note_title: Optional[str] = None,
    ) -> InternalLink:
        return InternalLink(
            id=link.id,
            source_note_id=link.source_note_id,
            target_note_id=link.target_note_id,
            target_title=link.target_title,
            link_text=link.link_text,
            line_number=link.line_number,
            created=link.created,
            source_title=source_title,
            target_note_title=target_note_title,
        )
