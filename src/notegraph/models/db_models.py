"""SQLAlchemy database models for the notegraph index."""
import datetime
from pathlib import Path
from typing import Optional, Union

from sqlalchemy import (CheckConstraint, Column, DateTime, ForeignKey, Integer,
                        String, Text, create_engine, event, text)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from notegraph.models.schema import ExternalLinkType, ValueType

# Create base class for SQLAlchemy models
Base = declarative_base()

MEMORY_DATABASE = ":memory:"


class DBNote(Base):
    """Database model for an indexed note."""
    __tablename__ = "notes"
    id = Column(String(512), primary_key=True)
    title = Column(String(512), nullable=False, index=True)
    content = Column(Text, nullable=True)
    type = Column(String(128), nullable=False, index=True)
    filename = Column(String(255), nullable=False, index=True)
    path = Column(Text, nullable=False, default="")
    created = Column(DateTime, default=datetime.datetime.now, nullable=False)
    updated = Column(DateTime, default=datetime.datetime.now, nullable=False, index=True)
    size = Column(Integer, nullable=False, default=0)
    content_hash = Column(String(80), nullable=True)

    def __repr__(self) -> str:
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBNoteMetadata(Base):
    """One key/value metadata row belonging to a note."""
    __tablename__ = "note_metadata"
    id = Column(Integer, primary_key=True, autoincrement=True)
    note_id = Column(
        String(512), ForeignKey("notes.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    key = Column(String(255), nullable=False, index=True)
    value = Column(Text, nullable=False)
    value_type = Column(String(20), nullable=False, default=ValueType.STRING.value)

    __table_args__ = (
        CheckConstraint(
            "value_type IN ({})".format(
                ", ".join(f"'{v.value}'" for v in ValueType)
            ),
            name="ck_note_metadata_value_type",
        ),
    )

    def __repr__(self) -> str:
        return f"<NoteMetadata(note_id='{self.note_id}', key='{self.key}')>"


class DBNoteLink(Base):
    """Wikilink edge. A NULL target marks a broken link."""
    __tablename__ = "note_links"
    id = Column(Integer, primary_key=True, autoincrement=True)
    source_note_id = Column(
        String(512), ForeignKey("notes.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    target_note_id = Column(
        String(512), ForeignKey("notes.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    target_title = Column(String(512), nullable=False, index=True)
    link_text = Column(Text, nullable=True)
    line_number = Column(Integer, nullable=True)
    created = Column(DateTime, default=datetime.datetime.now, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<NoteLink(source='{self.source_note_id}', "
            f"target='{self.target_note_id}', title='{self.target_title}')>"
        )


class DBExternalLink(Base):
    """External URL or embed referenced from a note."""
    __tablename__ = "external_links"
    id = Column(Integer, primary_key=True, autoincrement=True)
    note_id = Column(
        String(512), ForeignKey("notes.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    url = Column(Text, nullable=False)
    title = Column(Text, nullable=True)
    line_number = Column(Integer, nullable=True)
    link_type = Column(String(20), nullable=False, default=ExternalLinkType.URL.value)
    created = Column(DateTime, default=datetime.datetime.now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "link_type IN ({})".format(
                ", ".join(f"'{v.value}'" for v in ExternalLinkType)
            ),
            name="ck_external_links_link_type",
        ),
    )

    def __repr__(self) -> str:
        return f"<ExternalLink(note_id='{self.note_id}', url='{self.url}')>"


class DBSchemaInfo(Base):
    """Key/value table holding the schema version marker."""
    __tablename__ = "schema_info"
    key = Column(String(64), primary_key=True)
    value = Column(String(64), nullable=False)


def _install_pragmas(engine: Engine, read_only: bool = False, wal: bool = True) -> None:
    """Apply connection settings and take over transaction control.

    pysqlite's own implicit BEGIN handling is disabled so that the BEGIN
    emitted here is the only one, which keeps SAVEPOINT semantics intact.
    """

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not read_only:
            if wal:
                # WAL lets read-only connections see the last committed snapshot
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA cache_size=-16000")  # 16MB
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_store_engine(database_path: Union[str, Path]) -> Engine:
    """Create the read-write engine for a store."""
    if str(database_path) == MEMORY_DATABASE:
        engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        _install_pragmas(engine, wal=False)
        return engine

    path = Path(database_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{path}",
        pool_pre_ping=True,
        connect_args={"timeout": 30},
    )
    _install_pragmas(engine)
    return engine


def create_read_only_engine(database_path: Union[str, Path]) -> Engine:
    """Create an engine whose connections open the file with ``mode=ro``."""
    path = Path(database_path).resolve()
    engine = create_engine(
        f"sqlite:///file:{path.as_posix()}?mode=ro&uri=true",
        connect_args={"timeout": 30},
    )
    _install_pragmas(engine, read_only=True)
    return engine


def init_db(engine: Engine) -> None:
    """Create all tables, the FTS5 mirror and its sync triggers."""
    Base.metadata.create_all(engine)
    init_fts5(engine)


def init_fts5(engine: Engine) -> None:
    """Create the FTS5 mirror of ``notes`` and the triggers that maintain it.

    ``notes_fts`` is an external-content table over ``notes``. Only the
    triggers below write to it; it is kept in step within the same
    transaction as every insert, update and delete on ``notes``.
    """
    with engine.begin() as conn:
        conn.execute(text("""
            CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
                id UNINDEXED,
                title,
                content,
                type UNINDEXED,
                content='notes',
                content_rowid='rowid'
            )
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_ai AFTER INSERT ON notes BEGIN
                INSERT INTO notes_fts(rowid, id, title, content, type)
                VALUES (NEW.rowid, NEW.id, NEW.title, NEW.content, NEW.type);
            END
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_ad AFTER DELETE ON notes BEGIN
                INSERT INTO notes_fts(notes_fts, rowid, id, title, content, type)
                VALUES ('delete', OLD.rowid, OLD.id, OLD.title, OLD.content, OLD.type);
            END
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_au AFTER UPDATE ON notes BEGIN
                INSERT INTO notes_fts(notes_fts, rowid, id, title, content, type)
                VALUES ('delete', OLD.rowid, OLD.id, OLD.title, OLD.content, OLD.type);
                INSERT INTO notes_fts(rowid, id, title, content, type)
                VALUES (NEW.rowid, NEW.id, NEW.title, NEW.content, NEW.type);
            END
        """))


def get_session_factory(engine: Engine) -> sessionmaker:
    """Get a session factory bound to ``engine``."""
    return sessionmaker(bind=engine, expire_on_commit=False)
