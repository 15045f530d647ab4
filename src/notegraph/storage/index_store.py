"""SQLite index store: notes, metadata, the FTS5 mirror and link tables.

The store owns the schema and hands out scoped connections. The FTS5
mirror is maintained by triggers (see ``models.db_models.init_fts5``), so
nothing in this module writes ``notes_fts`` except the rebuild clear.
"""
import datetime
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from sqlalchemy import delete, func, select, text
from sqlalchemy.engine import Engine, RowMapping
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notegraph.config import config
from notegraph.content_hash import generate_content_hash
from notegraph.exceptions import ErrorCode, SchemaVersionError, StorageError
from notegraph.models.db_models import (MEMORY_DATABASE, DBNote, DBNoteMetadata,
                                        create_read_only_engine,
                                        create_store_engine, get_session_factory,
                                        init_db)
from notegraph.models.schema import NoteRecord
from notegraph.storage.metadata import deserialize_metadata, serialize_metadata
from notegraph.utils import (compare_versions, parse_version, split_note_id,
                             strip_md_extension)

logger = logging.getLogger(__name__)

SCHEMA_VERSION_KEY = "schema_version"


def _as_utc(value: datetime.datetime) -> datetime.datetime:
    # SQLite DATETIME columns come back naive; they were written as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


class StoreConnection:
    """A transaction-scoped handle on the store.

    Wraps an ORM session and adds the parameterized ``run/get/all``
    primitives used for plain SQL.
    """

    def __init__(self, session: Session, read_only: bool = False):
        self.session = session
        self.read_only = read_only

    def run(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> int:
        """Execute a statement and return the affected row count."""
        result = self.session.execute(text(sql), dict(params or {}))
        return result.rowcount

    def get(
        self, sql: str, params: Optional[Mapping[str, Any]] = None
    ) -> Optional[RowMapping]:
        """Return the first row of a query, or None."""
        return self.session.execute(text(sql), dict(params or {})).mappings().first()

    def all(
        self, sql: str, params: Optional[Mapping[str, Any]] = None
    ) -> List[RowMapping]:
        return list(self.session.execute(text(sql), dict(params or {})).mappings())

    def scalar(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        return self.session.execute(text(sql), dict(params or {})).scalar()

    @contextmanager
    def savepoint(self) -> Iterator["StoreConnection"]:
        """Run a block inside a SAVEPOINT, rolled back alone if it raises."""
        with self.session.begin_nested():
            yield self


class IndexStore:
    """Durable storage for the note index.

    Args:
        database_path: SQLite file, or ``":memory:"``. Defaults to the
            configured database path.
        engine: An existing engine to use instead of creating one.
    """

    # Order matters: deleting notes fires the FTS delete triggers before
    # the mirror is cleared.
    _REBUILD_STATEMENTS = (
        "DELETE FROM external_links",
        "DELETE FROM note_links",
        "DELETE FROM note_metadata",
        "DELETE FROM notes",
        "INSERT INTO notes_fts(notes_fts) VALUES('delete-all')",
    )

    def __init__(
        self,
        database_path: Optional[Union[str, Path]] = None,
        engine: Optional[Engine] = None,
    ):
        if engine is None:
            if database_path is None:
                database_path = config.get_absolute_path(config.database_path)
            engine = create_store_engine(database_path)
        elif database_path is None:
            database_path = engine.url.database or MEMORY_DATABASE

        self.database_path = str(database_path)
        self.engine = engine
        self.is_memory = self.database_path in ("", MEMORY_DATABASE)
        self._session_factory = get_session_factory(engine)
        self._read_only_engine: Optional[Engine] = None
        self._read_only_session_factory = None

        try:
            init_db(engine)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to initialize index store at {self.database_path}",
                operation="init",
                code=ErrorCode.STORAGE_CONNECTION_FAILED,
                original_error=e,
            ) from e
        logger.debug(f"Index store ready at {self.database_path}")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @contextmanager
    def connect(self) -> Iterator[StoreConnection]:
        """Open a read-write transaction.

        Commits when the block exits normally, rolls back on any exception,
        and always releases the connection.
        """
        with self._session_factory() as session, session.begin():
            yield StoreConnection(session)

    @contextmanager
    def connect_read_only(self) -> Iterator[StoreConnection]:
        """Open a connection that can only read committed data."""
        if self.is_memory:
            # One shared connection: guard it with query_only instead
            with self._session_factory() as session:
                session.execute(text("PRAGMA query_only=ON"))
                try:
                    yield StoreConnection(session, read_only=True)
                finally:
                    session.rollback()
                    session.execute(text("PRAGMA query_only=OFF"))
            return

        if self._read_only_session_factory is None:
            self._read_only_engine = create_read_only_engine(self.database_path)
            self._read_only_session_factory = get_session_factory(
                self._read_only_engine
            )
        with self._read_only_session_factory() as session:
            try:
                yield StoreConnection(session, read_only=True)
            finally:
                session.rollback()

    @contextmanager
    def connection_scope(
        self, conn: Optional[StoreConnection], read_only: bool = False
    ) -> Iterator[StoreConnection]:
        """Reuse ``conn`` when given, otherwise open a scoped connection."""
        if conn is not None:
            yield conn
        elif read_only:
            with self.connect_read_only() as ro:
                yield ro
        else:
            with self.connect() as rw:
                yield rw

    def close(self) -> None:
        """Dispose of pooled connections."""
        self.engine.dispose()
        if self._read_only_engine is not None:
            self._read_only_engine.dispose()
            self._read_only_engine = None
            self._read_only_session_factory = None

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def upsert_note(
        self,
        record: NoteRecord,
        metadata: Optional[Dict[str, Any]] = None,
        conn: Optional[StoreConnection] = None,
    ) -> NoteRecord:
        """Insert or update a note and replace its metadata rows.

        ``content_hash`` and ``size`` are always recomputed from content;
        an existing note keeps its ``created`` stamp.
        """
        content = record.content or ""
        stored = record.model_copy(
            update={
                "content_hash": generate_content_hash(content),
                "size": len(content.encode("utf-8")),
            }
        )
        try:
            with self.connection_scope(conn) as c:
                session = c.session
                db_note = session.get(DBNote, stored.id)
                if db_note is None:
                    db_note = DBNote(id=stored.id, created=stored.created)
                    session.add(db_note)
                else:
                    stored = stored.model_copy(update={"created": _as_utc(db_note.created)})
                db_note.title = stored.title
                db_note.content = stored.content
                db_note.type = stored.note_type
                db_note.filename = stored.filename
                db_note.path = stored.path
                db_note.updated = stored.updated
                db_note.size = stored.size
                db_note.content_hash = stored.content_hash
                session.flush()

                if metadata is not None:
                    session.execute(
                        delete(DBNoteMetadata).where(DBNoteMetadata.note_id == stored.id)
                    )
                    for entry in serialize_metadata(stored.id, metadata):
                        session.add(
                            DBNoteMetadata(
                                note_id=entry.note_id,
                                key=entry.key,
                                value=entry.value,
                                value_type=entry.value_type.value,
                            )
                        )
                    session.flush()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to write note {stored.id}",
                operation="upsert_note",
                entity=stored.id,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        return stored

    def remove_note(self, note_id: str, conn: Optional[StoreConnection] = None) -> bool:
        """Delete a note.

        Its metadata, outgoing edges and external links cascade away;
        inbound edges lose their target and become broken links.
        """
        try:
            with self.connection_scope(conn) as c:
                result = c.session.execute(delete(DBNote).where(DBNote.id == note_id))
                c.session.expire_all()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to delete note {note_id}",
                operation="remove_note",
                entity=note_id,
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e

    def get_note(
        self, note_id: str, conn: Optional[StoreConnection] = None
    ) -> Optional[NoteRecord]:
        try:
            with self.connection_scope(conn, read_only=True) as c:
                db_note = c.session.get(DBNote, note_id)
                return self._to_record(db_note) if db_note is not None else None
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to read note {note_id}",
                operation="get_note",
                entity=note_id,
                original_error=e,
            ) from e

    def get_note_content(
        self, note_id: str, conn: Optional[StoreConnection] = None
    ) -> Optional[str]:
        record = self.get_note(note_id, conn=conn)
        return record.content if record else None

    def get_metadata(
        self, note_id: str, conn: Optional[StoreConnection] = None
    ) -> Dict[str, Any]:
        """Deserialized metadata for a note (empty when it has none)."""
        try:
            with self.connection_scope(conn, read_only=True) as c:
                rows = c.session.execute(
                    select(
                        DBNoteMetadata.key,
                        DBNoteMetadata.value,
                        DBNoteMetadata.value_type,
                    )
                    .where(DBNoteMetadata.note_id == note_id)
                    .order_by(DBNoteMetadata.id)
                ).all()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to read metadata for {note_id}",
                operation="get_metadata",
                entity=note_id,
                original_error=e,
            ) from e
        return deserialize_metadata(rows)

    def list_note_ids(
        self, note_type: Optional[str] = None, conn: Optional[StoreConnection] = None
    ) -> List[str]:
        query = select(DBNote.id).order_by(DBNote.id)
        if note_type:
            query = query.where(DBNote.type == note_type)
        with self.connection_scope(conn, read_only=True) as c:
            return list(c.session.scalars(query).all())

    def list_notes(
        self,
        note_type: Optional[str] = None,
        limit: Optional[int] = None,
        conn: Optional[StoreConnection] = None,
    ) -> List[NoteRecord]:
        """Notes ordered by most recently updated first."""
        query = select(DBNote).order_by(DBNote.updated.desc(), DBNote.id)
        if note_type:
            query = query.where(DBNote.type == note_type)
        if limit is not None:
            query = query.limit(limit)
        with self.connection_scope(conn, read_only=True) as c:
            return [self._to_record(n) for n in c.session.scalars(query).all()]

    def count_notes(self, conn: Optional[StoreConnection] = None) -> int:
        with self.connection_scope(conn, read_only=True) as c:
            return c.session.scalar(select(func.count()).select_from(DBNote)) or 0

    def resolve_target(
        self, target: str, conn: Optional[StoreConnection] = None
    ) -> Optional[str]:
        """Resolve a wikilink target to a note id.

        Tried in order: case-insensitive title, ``type/filename`` (with
        and without ``.md``), then bare filename (with and without ``.md``).
        """
        target = target.strip()
        if not target:
            return None
        with self.connection_scope(conn, read_only=True) as c:
            row = c.get(
                "SELECT id FROM notes WHERE title = :title COLLATE NOCASE "
                "ORDER BY id LIMIT 1",
                {"title": target},
            )
            if row:
                return row["id"]

            note_type, filename = split_note_id(target)
            if note_type and "/" not in filename:
                bare = strip_md_extension(filename)
                row = c.get(
                    "SELECT id FROM notes WHERE type = :type "
                    "AND filename IN (:bare, :with_ext) ORDER BY id LIMIT 1",
                    {"type": note_type, "bare": bare, "with_ext": f"{bare}.md"},
                )
                if row:
                    return row["id"]

            bare = strip_md_extension(target)
            row = c.get(
                "SELECT id FROM notes WHERE filename IN (:bare, :with_ext) "
                "ORDER BY id LIMIT 1",
                {"bare": bare, "with_ext": f"{bare}.md"},
            )
            return row["id"] if row else None

    def get_stats(self, conn: Optional[StoreConnection] = None) -> Dict[str, Any]:
        """Row counts per table and the schema version marker."""
        with self.connection_scope(conn, read_only=True) as c:
            return {
                "notes": c.scalar("SELECT COUNT(*) FROM notes"),
                "metadata_entries": c.scalar("SELECT COUNT(*) FROM note_metadata"),
                "fts_rows": c.scalar("SELECT COUNT(*) FROM notes_fts"),
                "internal_links": c.scalar("SELECT COUNT(*) FROM note_links"),
                "broken_links": c.scalar(
                    "SELECT COUNT(*) FROM note_links WHERE target_note_id IS NULL"
                ),
                "external_links": c.scalar("SELECT COUNT(*) FROM external_links"),
                "schema_version": self.get_schema_version(conn=c),
            }

    @staticmethod
    def _to_record(db_note: DBNote) -> NoteRecord:
        return NoteRecord(
            id=db_note.id,
            title=db_note.title,
            content=db_note.content,
            note_type=db_note.type,
            filename=db_note.filename,
            path=db_note.path or "",
            created=_as_utc(db_note.created),
            updated=_as_utc(db_note.updated),
            size=db_note.size or 0,
            content_hash=db_note.content_hash,
        )

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def rebuild(self) -> None:
        """Empty every derived table in one transaction, then VACUUM/ANALYZE.

        On failure nothing is deleted. The schema version marker is never
        touched.

        Raises:
            StorageError: If the transaction fails (``operation="rebuild"``).
        """
        logger.info("Rebuilding index: clearing notes, metadata, links and FTS mirror")
        try:
            with self.connect() as conn:
                for statement in self._REBUILD_STATEMENTS:
                    conn.run(statement)
        except SQLAlchemyError as e:
            logger.error(f"Index rebuild failed and was rolled back: {e}")
            raise StorageError(
                "Index rebuild failed; the store was left unchanged",
                operation="rebuild",
                entity=self.database_path,
                code=ErrorCode.STORAGE_REBUILD_FAILED,
                original_error=e,
            ) from e
        self._reclaim_space()

    def _reclaim_space(self) -> None:
        # VACUUM cannot run inside a transaction, so use the raw DB-API connection
        raw = self.engine.raw_connection()
        try:
            cursor = raw.cursor()
            try:
                cursor.execute("VACUUM")
                cursor.execute("ANALYZE")
            finally:
                cursor.close()
        except sqlite3.Error as e:
            # The rebuild itself is committed; stale free pages are harmless
            logger.warning(f"VACUUM/ANALYZE after rebuild failed: {e}")
        finally:
            raw.close()

    # ------------------------------------------------------------------
    # Schema info
    # ------------------------------------------------------------------

    def get_schema_version(self, conn: Optional[StoreConnection] = None) -> Optional[str]:
        with self.connection_scope(conn, read_only=True) as c:
            row = c.get(
                "SELECT value FROM schema_info WHERE key = :key",
                {"key": SCHEMA_VERSION_KEY},
            )
            return row["value"] if row else None

    def set_schema_version(
        self, version: str, conn: Optional[StoreConnection] = None
    ) -> None:
        """Persist the schema version marker.

        Raises:
            SchemaVersionError: If ``version`` is malformed or lower than the
                stored marker.
        """
        try:
            parse_version(version)
        except ValueError as e:
            raise SchemaVersionError(
                str(e), version=version, code=ErrorCode.SCHEMA_VERSION_INVALID
            ) from e

        with self.connection_scope(conn) as c:
            current = self.get_schema_version(conn=c)
            if current is not None and compare_versions(version, current) < 0:
                raise SchemaVersionError(
                    f"Refusing to lower schema version from {current} to {version}",
                    version=version,
                    current_version=current,
                )
            c.run(
                "INSERT INTO schema_info (key, value) VALUES (:key, :value) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                {"key": SCHEMA_VERSION_KEY, "value": version},
            )
        logger.debug(f"Schema version set to {version}")

    def table_exists(self, name: str, conn: Optional[StoreConnection] = None) -> bool:
        with self.connection_scope(conn, read_only=True) as c:
            row = c.get(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = :name",
                {"name": name},
            )
            return row is not None
