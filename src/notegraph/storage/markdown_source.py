"""Note source over a directory tree of markdown files.

Notes live at ``<root>/<type>/<name>.md`` with optional YAML front matter.
The note id is ``<type>/<name>.md``.
"""
import datetime
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import frontmatter
import yaml

from notegraph.config import config
from notegraph.models.schema import NoteLookupResult, NoteRecord, SourceNote
from notegraph.utils import split_note_id, strip_md_extension

logger = logging.getLogger(__name__)

# Front matter keys that map onto record fields rather than metadata
_RECORD_KEYS = ("title", "type", "created", "updated")


def _as_datetime(value: Any, fallback: datetime.datetime) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        dt = value
    elif isinstance(value, datetime.date):
        dt = datetime.datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            dt = datetime.datetime.fromisoformat(value)
        except ValueError:
            return fallback
    else:
        return fallback
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt


class MarkdownNoteSource:
    """Reads notes from ``<root>/<type>/<name>.md`` files.

    Files that cannot be read or parsed are logged and skipped, so one bad
    file never stops a re-index.
    """

    def __init__(self, root: Optional[Union[str, Path]] = None):
        self.root = Path(root) if root else config.get_absolute_path(config.notes_dir)
        self._titles: Dict[str, NoteLookupResult] = {}
        self._titles_signature: Optional[Tuple[Tuple[str, int, int], ...]] = None

    def _note_paths(self) -> List[Path]:
        if not self.root.is_dir():
            return []
        return sorted(self.root.glob("*/*.md"))

    @staticmethod
    def _signature(paths: List[Path]) -> Tuple[Tuple[str, int, int], ...]:
        entries = []
        for path in paths:
            try:
                stat = path.stat()
            except OSError:
                continue
            entries.append((str(path), stat.st_mtime_ns, stat.st_size))
        return tuple(entries)

    def iter_notes(self) -> Iterator[SourceNote]:
        if not self.root.is_dir():
            logger.warning(f"Notes directory does not exist: {self.root}")
            return
        paths = self._note_paths()
        signature = self._signature(paths)
        titles: Dict[str, NoteLookupResult] = {}
        for path in paths:
            note = self._load(path)
            if note is None:
                continue
            titles.setdefault(note.record.title.lower(), self._lookup(note))
            yield note
        # Only a completed pass has seen every title
        self._titles = titles
        self._titles_signature = signature

    def title_index(self) -> Dict[str, NoteLookupResult]:
        """Lower-cased title to note, reparsed only when files changed."""
        if self._signature(self._note_paths()) != self._titles_signature:
            for _ in self.iter_notes():
                pass
        return self._titles

    def get_note(self, identifier: str) -> Optional[NoteLookupResult]:
        """Find a note by ``type/filename``, bare filename, or title."""
        path = self._path_for(identifier)
        note = self._load(path) if path is not None else None
        if note is not None:
            return self._lookup(note)
        return self.title_index().get(identifier.strip().lower())

    def search_notes(
        self, query: str, note_type: Optional[str] = None, limit: int = 10
    ) -> List[NoteLookupResult]:
        """Case-insensitive substring search over titles and bodies.

        An empty query returns the most recently updated notes.
        """
        needle = (query or "").strip().lower()
        matches = [
            note for note in self.iter_notes()
            if (not note_type or note.record.note_type == note_type)
            and (
                not needle
                or needle in note.record.title.lower()
                or needle in (note.record.content or "").lower()
            )
        ]
        matches.sort(key=lambda n: n.record.updated, reverse=True)
        return [self._lookup(note) for note in matches[:limit]]

    def _path_for(self, identifier: str) -> Optional[Path]:
        note_type, filename = split_note_id(identifier.strip())
        name = f"{strip_md_extension(filename)}.md"
        if note_type:
            path = self.root / note_type / name
            return path if path.is_file() else None
        candidates = sorted(self.root.glob(f"*/{name}")) if self.root.is_dir() else []
        return candidates[0] if candidates else None

    def _load(self, path: Path) -> Optional[SourceNote]:
        try:
            post = frontmatter.load(str(path))
            stat = path.stat()
        except (OSError, UnicodeDecodeError, ValueError, yaml.YAMLError) as e:
            logger.warning(f"Skipping unreadable note file {path}: {e}")
            return None

        modified = datetime.datetime.fromtimestamp(
            stat.st_mtime, tz=datetime.timezone.utc
        )
        meta: Dict[str, Any] = dict(post.metadata)
        title = meta.get("title") or self._heading_title(post.content) or path.stem
        note_type = path.parent.name
        try:
            record = NoteRecord(
                title=str(title),
                content=post.content,
                note_type=note_type,
                filename=path.name,
                path=str(path),
                created=_as_datetime(meta.get("created"), modified),
                updated=_as_datetime(meta.get("updated"), modified),
            )
        except ValueError as e:
            logger.warning(f"Skipping invalid note file {path}: {e}")
            return None
        metadata = {k: v for k, v in meta.items() if k not in _RECORD_KEYS}
        return SourceNote(record=record, metadata=metadata)

    @staticmethod
    def _heading_title(body: str) -> Optional[str]:
        for line in body.strip().split("\n"):
            if line.startswith("# "):
                return line[2:].strip() or None
        return None

    @staticmethod
    def _lookup(note: SourceNote) -> NoteLookupResult:
        return NoteLookupResult(
            id=note.record.id,
            title=note.record.title,
            note_type=note.record.note_type,
            filename=note.record.filename,
        )
