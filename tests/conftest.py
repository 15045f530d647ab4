"""Common test fixtures for the notegraph index."""

import tempfile
from pathlib import Path

import pytest

from notegraph.config import config
from notegraph.models.schema import NoteRecord
from notegraph.observability import metrics
from notegraph.services.index_service import IndexService
from notegraph.services.link_extractor import LinkExtractor
from notegraph.services.link_service import LinkService
from notegraph.services.linking_service import LinkingService
from notegraph.services.note_source import StoreNoteSource
from notegraph.storage.fts_index import FtsIndex
from notegraph.storage.index_store import IndexStore
from tests.fakes import InMemoryNoteSource, make_record


@pytest.fixture
def temp_dirs():
    """Create temporary directories for notes and database."""
    with tempfile.TemporaryDirectory() as notes_dir:
        with tempfile.TemporaryDirectory() as db_dir:
            yield Path(notes_dir), Path(db_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    notes_dir, db_dir = temp_dirs
    monkeypatch.setattr(config, "notes_dir", notes_dir)
    monkeypatch.setattr(config, "database_path", db_dir / "test_index.db")
    yield config


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Keep operation metrics from leaking between tests."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store(test_config):
    """A file-backed index store in a temporary directory."""
    index_store = IndexStore(test_config.get_absolute_path(test_config.database_path))
    yield index_store
    index_store.close()


@pytest.fixture
def extractor(store):
    return LinkExtractor(store)


@pytest.fixture
def index_service(store, extractor):
    return IndexService(store, extractor)


@pytest.fixture
def link_service(store, extractor):
    return LinkService(store, extractor=extractor)


@pytest.fixture
def fts_index(store):
    return FtsIndex(store)


@pytest.fixture
def linking_service(store):
    """Suggestion engine reading from the index store."""
    return LinkingService(StoreNoteSource(store))


@pytest.fixture
def add_note(index_service):
    """Index a note through the write path.

    Usage: ``add_note("project", "plan.md", "Project Plan", "body")``
    """
    def _add(note_type, filename, title, content="", **metadata) -> NoteRecord:
        return index_service.index_note(
            make_record(note_type, filename, title, content), metadata or None
        )
    return _add


@pytest.fixture
def memory_source():
    return InMemoryNoteSource()
