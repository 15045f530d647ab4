"""Extraction of wikilinks and external links, and link graph refresh.

Refreshing the graph for a note is always clear-then-insert: every edge the
note owns is deleted and the freshly parsed set inserted in the same
transaction, so stale edges never survive a content change.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from notegraph.config import config
from notegraph.exceptions import ErrorCode, LinkError, StorageError
from notegraph.models.schema import (ExternalLinkType, ExtractedExternalLink,
                                     ExtractedWikilink, LinkExtractionResult,
                                     ParsedWikilink)
from notegraph.observability import timed_operation, traced
from notegraph.services.wikilink_parser import parse_wikilinks
from notegraph.storage.index_store import IndexStore, StoreConnection
from notegraph.storage.link_repository import LinkRepository
from notegraph.utils import strip_md_extension, utc_now

logger = logging.getLogger(__name__)

IMAGE_EMBED_PATTERN = re.compile(r"!\[([^\]]*)\]\(([^)]+)\)")
MARKDOWN_LINK_PATTERN = re.compile(r"\[([^\]]*)\]\(([^)]+)\)")
PLAIN_URL_PATTERN = re.compile(r"""https?://[^\s<>"']+""")

# Error messages kept in a batch summary
MAX_ERROR_SAMPLES = 10

ProgressCallback = Callable[[int, int], None]


@dataclass
class BatchExtractionSummary:
    """Outcome of a batch link extraction run."""
    total: int = 0
    processed: int = 0
    skipped: int = 0
    error_count: int = 0
    errors: List[str] = field(default_factory=list)
    wikilinks_stored: int = 0
    external_links_stored: int = 0
    batches: int = 0

    @property
    def links_stored(self) -> int:
        return self.wikilinks_stored + self.external_links_stored


@dataclass
class RenameUpdateSummary:
    """Wikilink rewrites made after a note was renamed."""
    notes_updated: int = 0
    links_updated: int = 0
    errors: List[str] = field(default_factory=list)


def describe_error(error: Exception) -> str:
    """One-line ``Type: message`` summary, without SQL text or parameters."""
    cause = getattr(error, "orig", None) or error
    lines = str(cause).strip().splitlines()
    name = type(error).__name__
    return f"{name}: {lines[0]}" if lines else name


def is_valid_url(url: str) -> bool:
    """Only absolute http(s) URLs with a host count as external links."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _external_links_in_line(line: str, line_number: int) -> List[ExtractedExternalLink]:
    links = []
    # Character ranges already claimed by image embeds and markdown links
    spans = []
    for match in IMAGE_EMBED_PATTERN.finditer(line):
        spans.append(match.span())
        url = match.group(2).strip()
        if is_valid_url(url):
            links.append(
                ExtractedExternalLink(
                    url=url,
                    title=match.group(1).strip() or None,
                    line_number=line_number,
                    link_type=ExternalLinkType.IMAGE,
                )
            )
    for match in MARKDOWN_LINK_PATTERN.finditer(line):
        spans.append(match.span())
        url = match.group(2).strip()
        if is_valid_url(url):
            links.append(
                ExtractedExternalLink(
                    url=url,
                    title=match.group(1).strip() or None,
                    line_number=line_number,
                    link_type=ExternalLinkType.URL,
                )
            )
    captured = {link.url for link in links}
    for match in PLAIN_URL_PATTERN.finditer(line):
        if any(start <= match.start() < end for start, end in spans):
            continue
        url = match.group(0).strip()
        if url not in captured and is_valid_url(url):
            captured.add(url)
            links.append(
                ExtractedExternalLink(
                    url=url, title=None, line_number=line_number,
                    link_type=ExternalLinkType.URL,
                )
            )
    return links


def extract_links(content: str) -> LinkExtractionResult:
    """Parse a note body into wikilinks and external links.

    Works line by line so every link carries its 1-based line number.
    Display text is kept only when it differs from the target. External
    URLs are deduplicated across the document, first occurrence wins.
    """
    result = LinkExtractionResult()
    seen_urls = set()
    for index, line in enumerate(content.split("\n")):
        line_number = index + 1
        for link in parse_wikilinks(line):
            result.wikilinks.append(
                ExtractedWikilink(
                    target=link.target,
                    link_text=link.display if link.display != link.target else None,
                    line_number=line_number,
                )
            )
        for ext in _external_links_in_line(line, line_number):
            if ext.url not in seen_urls:
                seen_urls.add(ext.url)
                result.external_links.append(ext)
    return result


def rewrite_links_for_rename(
    content: str, note_id: str, old_title: str, new_title: str
) -> Tuple[str, int]:
    """Rewrite wikilinks that name a renamed note.

    Handles ``[[Old]]`` -> ``[[New]]``, ``[[Old|text]]`` -> ``[[New|text]]``
    and ``[[<note_id>|Old]]`` -> ``[[<note_id>|New]]``. Returns the new
    content and the number of links changed.
    """
    updated = content
    changed = 0
    links: List[ParsedWikilink] = parse_wikilinks(content)
    for link in sorted(links, key=lambda l: l.start, reverse=True):
        replacement = None
        if link.target == old_title and link.display in (None, old_title):
            replacement = f"[[{new_title}]]"
        elif link.target == old_title:
            replacement = f"[[{new_title}|{link.display}]]"
        elif link.display == old_title and link.target == note_id:
            replacement = f"[[{link.target}|{new_title}]]"
        if replacement is not None:
            updated = updated[:link.start] + replacement + updated[link.end:]
            changed += 1
    return updated, changed


class LinkExtractor:
    """Keeps the stored link graph in step with note content."""

    def __init__(
        self,
        store: IndexStore,
        repository: Optional[LinkRepository] = None,
    ):
        self.store = store
        self.repository = repository or LinkRepository()

    extract_links = staticmethod(extract_links)

    def store_links(
        self,
        note_id: str,
        result: LinkExtractionResult,
        conn: Optional[StoreConnection] = None,
    ) -> Tuple[int, int]:
        """Replace the edges owned by ``note_id`` with ``result``.

        Runs in its own transaction, or in a SAVEPOINT of ``conn`` when one
        is given. Returns ``(wikilinks_stored, external_links_stored)``.
        """
        if conn is None:
            with self.store.connect() as own:
                return self._replace_links(own, note_id, result)
        with conn.savepoint():
            return self._replace_links(conn, note_id, result)

    def _replace_links(
        self, conn: StoreConnection, note_id: str, result: LinkExtractionResult
    ) -> Tuple[int, int]:
        resolved = [
            self.store.resolve_target(link.target, conn=conn)
            for link in result.wikilinks
        ]
        self.repository.clear_links(conn, note_id)
        wikilinks = self.repository.insert_wikilinks(
            conn, note_id, result.wikilinks, resolved
        )
        external = self.repository.insert_external_links(
            conn, note_id, result.external_links
        )
        logger.debug(
            f"Stored {wikilinks} wikilinks and {external} external links for {note_id}"
        )
        return wikilinks, external

    @traced("extract_and_store_links")
    def extract_and_store(
        self,
        note_id: str,
        content: Optional[str],
        conn: Optional[StoreConnection] = None,
    ) -> LinkExtractionResult:
        """Parse ``content`` and refresh the graph for ``note_id``."""
        result = extract_links(content or "")
        self.store_links(note_id, result, conn=conn)
        return result

    def migrate_link_extraction(
        self,
        notes: Iterable[Tuple[str, Optional[str]]],
        batch_size: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BatchExtractionSummary:
        """Re-extract links for many notes in fixed-size batches.

        Each batch is one transaction and each note a SAVEPOINT inside it.
        A note that fails is logged, counted and skipped. Any other failure
        rolls back the current batch and is raised as :class:`LinkError`;
        earlier batches stay committed.

        Args:
            notes: ``(note_id, content)`` pairs. Notes without content are
                skipped.
            batch_size: Notes per transaction (defaults to config).
            progress_callback: Called with ``(processed, total)`` after each
                committed batch.
        """
        items = list(notes)
        size = config.link_batch_size if batch_size is None else batch_size
        if size < 1:
            raise ValueError("batch_size must be >= 1")
        summary = BatchExtractionSummary(total=len(items))
        logger.info(f"Starting link extraction for {len(items)} notes (batch size {size})")

        with timed_operation("migrate_link_extraction", total=len(items)) as op:
            for start in range(0, len(items), size):
                batch = items[start:start + size]
                batch_summary = BatchExtractionSummary()
                try:
                    with self.store.connect() as conn:
                        for note_id, content in batch:
                            self._extract_one(conn, note_id, content, batch_summary)
                except (SQLAlchemyError, StorageError) as e:
                    logger.error(
                        f"Link extraction batch starting at note {start} failed "
                        f"and was rolled back: {e}"
                    )
                    raise LinkError(
                        f"Link extraction aborted in batch {summary.batches + 1}",
                        code=ErrorCode.LINK_MIGRATION_FAILED,
                        original_error=e,
                    ) from e

                self._merge(summary, batch_summary)
                summary.batches += 1
                logger.info(
                    f"Link extraction progress: {summary.processed}/{summary.total} "
                    f"({summary.error_count} errors)"
                )
                if progress_callback is not None:
                    progress_callback(summary.processed, summary.total)

            op["processed"] = summary.processed
            op["errors"] = summary.error_count

        logger.info(
            f"Link extraction complete: {summary.processed} processed, "
            f"{summary.error_count} errors, {summary.wikilinks_stored} wikilinks, "
            f"{summary.external_links_stored} external links"
        )
        return summary

    def _extract_one(
        self,
        conn: StoreConnection,
        note_id: str,
        content: Optional[str],
        summary: BatchExtractionSummary,
    ) -> None:
        if content is None:
            summary.skipped += 1
            return
        try:
            with conn.savepoint():
                wikilinks, external = self._replace_links(
                    conn, note_id, extract_links(content)
                )
        except (IntegrityError, LinkError, ValueError, TypeError) as e:
            summary.processed += 1
            summary.error_count += 1
            message = f"{note_id}: {describe_error(e)}"
            if len(summary.errors) < MAX_ERROR_SAMPLES:
                summary.errors.append(message)
            logger.warning(f"Failed to extract links for note {message}")
            return
        summary.processed += 1
        summary.wikilinks_stored += wikilinks
        summary.external_links_stored += external

    @staticmethod
    def _merge(total: BatchExtractionSummary, batch: BatchExtractionSummary) -> None:
        total.processed += batch.processed
        total.skipped += batch.skipped
        total.error_count += batch.error_count
        total.wikilinks_stored += batch.wikilinks_stored
        total.external_links_stored += batch.external_links_stored
        room = MAX_ERROR_SAMPLES - len(total.errors)
        if room > 0:
            total.errors.extend(batch.errors[:room])

    def resolve_broken_links_for(
        self, note_id: str, conn: Optional[StoreConnection] = None
    ) -> int:
        """Attach broken edges that name ``note_id`` to it.

        An edge names the note when its written target is the note's title,
        id or filename (with or without ``.md``).
        """
        with self.store.connection_scope(conn) as c:
            record = self.store.get_note(note_id, conn=c)
            if record is None:
                return 0
            bare = strip_md_extension(record.filename)
            names = [
                record.title,
                record.id,
                f"{record.note_type}/{bare}",
                record.filename,
                bare,
            ]
            attached = self.repository.attach_broken_links(c, note_id, names)
        if attached:
            logger.info(f"Resolved {attached} broken links to {note_id}")
        return attached

    def update_wikilinks_for_renamed_note(
        self,
        note_id: str,
        old_title: str,
        new_title: str,
        conn: Optional[StoreConnection] = None,
    ) -> RenameUpdateSummary:
        """Rewrite links to a renamed note in every note that references it.

        Each referencing note gets new content (and fingerprint) and a fresh
        set of edges. A note that cannot be updated is logged and skipped.
        """
        summary = RenameUpdateSummary()
        if old_title == new_title:
            return summary

        with self.store.connection_scope(conn) as c:
            sources = self.repository.get_referencing_sources(c, note_id, old_title)
            for source_id in sources:
                try:
                    with c.savepoint():
                        record = self.store.get_note(source_id, conn=c)
                        if record is None or record.content is None:
                            continue
                        content, changed = rewrite_links_for_rename(
                            record.content, note_id, old_title, new_title
                        )
                        if not changed:
                            continue
                        self.store.upsert_note(
                            record.model_copy(
                                update={"content": content, "updated": utc_now()}
                            ),
                            conn=c,
                        )
                        self._replace_links(c, source_id, extract_links(content))
                except (StorageError, IntegrityError, LinkError, ValueError) as e:
                    summary.errors.append(f"{source_id}: {describe_error(e)}")
                    logger.warning(
                        f"Failed to update wikilinks in note {source_id}: {e}"
                    )
                    continue
                summary.notes_updated += 1
                summary.links_updated += changed

        logger.info(
            f"Rename of {note_id}: updated {summary.links_updated} links "
            f"in {summary.notes_updated} notes"
        )
        return summary
