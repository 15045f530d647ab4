"""Schema version tracking and upgrade of existing index stores.

A store records the schema version it was last migrated to. On start-up
the manager compares that marker with the version the code expects and
runs every pending migration in order. A migration may require a full
rebuild (the store is emptied and re-populated from the note source) and
may require link re-extraction over every note.
"""
import logging
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from notegraph.config import config
from notegraph.exceptions import MigrationFailedError, MigrationNotFoundError
from notegraph.models.schema import SourceNote
from notegraph.observability import timed_operation
from notegraph.services.link_extractor import (BatchExtractionSummary, LinkExtractor,
                                               ProgressCallback)
from notegraph.services.note_source import NoteSource
from notegraph.storage.index_store import IndexStore, StoreConnection
from notegraph.utils import compare_versions

logger = logging.getLogger(__name__)

BASELINE_SCHEMA_VERSION = "1.0.0"


@dataclass(frozen=True)
class DatabaseMigration:
    version: str
    description: str
    requires_full_rebuild: bool = False
    requires_link_migration: bool = False
    migration_function: Optional[Callable[[StoreConnection], None]] = None


@dataclass(frozen=True)
class MigrationPlan:
    """The ordered migrations a build of notegraph knows about."""

    current_version: str
    migrations: Tuple[DatabaseMigration, ...] = ()
    baseline_version: str = BASELINE_SCHEMA_VERSION
    required_tables: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def find(self, version: str) -> Optional[DatabaseMigration]:
        return next((m for m in self.migrations if m.version == version), None)

    def tables_for(self, version: str) -> Tuple[str, ...]:
        return tuple(self.required_tables.get(version, ("notes",)))


DEFAULT_MIGRATION_PLAN = MigrationPlan(
    current_version="1.1.0",
    migrations=(
        DatabaseMigration(
            version="1.1.0",
            description="Add link extraction tables (note_links, external_links)",
            requires_full_rebuild=True,
            requires_link_migration=True,
        ),
    ),
    required_tables={"1.1.0": ("note_links", "external_links")},
)


@dataclass
class MigrationResult:
    migrated: bool
    rebuilt_database: bool
    migrated_links: bool
    from_version: str
    to_version: str
    executed_migrations: List[str] = field(default_factory=list)
    link_summary: Optional[BatchExtractionSummary] = None


def is_version_newer(version: str, other: str) -> bool:
    """True if ``version`` sorts strictly after ``other``.

    Components compare numerically and missing components count as zero,
    so ``1.1`` equals ``1.1.0``.
    """
    return compare_versions(version, other) > 0


def populate_from_source(
    store: IndexStore,
    notes: Iterable[SourceNote],
    batch_size: Optional[int] = None,
) -> List[Tuple[str, Optional[str]]]:
    """Write ``notes`` into ``store``.

    Notes are upserted in batches of ``batch_size``, one transaction per
    batch. Returns the ``(note_id, content)`` pairs that were written, in
    order, ready for link extraction.
    """
    size = config.reindex_batch_size if batch_size is None else batch_size
    if size < 1:
        raise ValueError("batch_size must be >= 1")
    written: List[Tuple[str, Optional[str]]] = []
    batch: List[SourceNote] = []

    def flush() -> None:
        with store.connect() as conn:
            for note in batch:
                store.upsert_note(note.record, note.metadata, conn=conn)
        written.extend((note.id, note.content) for note in batch)
        batch.clear()
        logger.info(f"Re-populated {len(written)} notes")

    for note in notes:
        batch.append(note)
        if len(batch) >= size:
            flush()
    if batch:
        flush()
    return written


def rebuild_from_source(
    store: IndexStore,
    note_source: NoteSource,
    batch_size: Optional[int] = None,
) -> List[Tuple[str, Optional[str]]]:
    """Empty ``store`` and re-populate it from ``note_source``.

    The source is read in full before the store is emptied, so a source
    backed by the store itself still sees every note.
    """
    size = config.reindex_batch_size if batch_size is None else batch_size
    if size < 1:
        raise ValueError("batch_size must be >= 1")
    notes = list(note_source.iter_notes())
    logger.info(f"Read {len(notes)} notes from source; rebuilding store")
    store.rebuild()
    return populate_from_source(store, notes, size)


class MigrationManager:
    """Runs the migrations of a :class:`MigrationPlan` against a store."""

    def __init__(
        self,
        plan: MigrationPlan = DEFAULT_MIGRATION_PLAN,
        link_batch_size: Optional[int] = None,
        reindex_batch_size: Optional[int] = None,
    ):
        self.plan = plan
        self.link_batch_size = link_batch_size
        self.reindex_batch_size = reindex_batch_size

    def get_current_schema_version(self) -> str:
        return self.plan.current_version

    def get_migration_info(self) -> Dict[str, object]:
        return {
            "current_version": self.plan.current_version,
            "baseline_version": self.plan.baseline_version,
            "available_migrations": list(self.plan.migrations),
        }

    def pending_migrations(self, from_version: str) -> List[DatabaseMigration]:
        pending = [m for m in self.plan.migrations if is_version_newer(m.version, from_version)]
        return sorted(pending, key=cmp_to_key(lambda a, b: compare_versions(a.version, b.version)))

    def check_and_migrate(
        self,
        declared_version: Optional[str],
        store: IndexStore,
        note_source: NoteSource,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> MigrationResult:
        """Bring ``store`` from ``declared_version`` up to the plan's version.

        ``None`` means the store predates version tracking and is treated
        as the baseline. When nothing is pending the store is left alone.

        Raises:
            MigrationFailedError: If any step fails. Migrations that
                completed before the failure keep their advanced marker.
        """
        from_version = declared_version or self.plan.baseline_version
        to_version = self.plan.current_version
        result = MigrationResult(
            migrated=False,
            rebuilt_database=False,
            migrated_links=False,
            from_version=from_version,
            to_version=to_version,
        )

        try:
            pending = self.pending_migrations(from_version)
        except ValueError as e:
            raise MigrationFailedError(
                f"Invalid schema version {from_version!r}",
                from_version=from_version,
                to_version=to_version,
                original_error=e,
            ) from e
        if from_version == to_version or not pending:
            logger.debug(f"Schema is up to date at {from_version}")
            return result

        logger.info(
            f"Database migration required: {from_version} -> {to_version} "
            f"({len(pending)} migration(s))"
        )
        with timed_operation("check_and_migrate", from_version=from_version) as op:
            for migration in pending:
                self._run(migration, store, note_source, result, progress_callback,
                          from_version=from_version, to_version=to_version)
                result.executed_migrations.append(migration.version)
            op["executed"] = len(result.executed_migrations)

        result.migrated = True
        logger.info(f"Database migration completed at {to_version}")
        return result

    def _run(
        self,
        migration: DatabaseMigration,
        store: IndexStore,
        note_source: NoteSource,
        result: MigrationResult,
        progress_callback: Optional[ProgressCallback],
        from_version: str,
        to_version: str,
    ) -> None:
        logger.info(f"Executing migration {migration.version}: {migration.description}")
        try:
            self._execute(migration, store, note_source, result, progress_callback)
            store.set_schema_version(migration.version)
        except Exception as e:
            logger.error(f"Migration {migration.version} failed: {e}")
            raise MigrationFailedError(
                f"Database migration {migration.version} failed: {e}",
                from_version=from_version,
                to_version=to_version,
                migration_version=migration.version,
                original_error=e,
            ) from e

    def _execute(
        self,
        migration: DatabaseMigration,
        store: IndexStore,
        note_source: NoteSource,
        result: Optional[MigrationResult],
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        pairs: Optional[List[Tuple[str, Optional[str]]]] = None
        if migration.requires_full_rebuild:
            logger.info("Performing full database rebuild")
            pairs = rebuild_from_source(store, note_source, self.reindex_batch_size)
            if result is not None:
                result.rebuilt_database = True

        if migration.migration_function is not None:
            with store.connect() as conn:
                migration.migration_function(conn)

        if migration.requires_link_migration:
            if pairs is None:
                pairs = [(note.id, note.content) for note in note_source.iter_notes()]
            logger.info(f"Extracting links from {len(pairs)} notes")
            summary = LinkExtractor(store).migrate_link_extraction(
                pairs,
                batch_size=self.link_batch_size,
                progress_callback=progress_callback,
            )
            if result is not None:
                result.link_summary = summary
                result.migrated_links = result.migrated_links or summary.links_stored > 0

    def run_specific_migration(
        self,
        version: str,
        store: IndexStore,
        note_source: NoteSource,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        """Run one migration regardless of the stored marker.

        Raises:
            MigrationNotFoundError: If the plan has no migration ``version``.
            MigrationFailedError: If the migration fails.
        """
        migration = self.plan.find(version)
        if migration is None:
            raise MigrationNotFoundError(version)
        logger.info(f"Running specific migration {version}: {migration.description}")
        try:
            self._execute(migration, store, note_source, None, progress_callback)
        except Exception as e:
            logger.error(f"Migration {version} failed: {e}")
            raise MigrationFailedError(
                f"Migration {version} failed: {e}",
                migration_version=version,
                original_error=e,
            ) from e
        current = store.get_schema_version()
        if current is None or is_version_newer(version, current):
            store.set_schema_version(version)
        logger.info(f"Migration {version} completed")

    def validate_schema(self, store: IndexStore, version: Optional[str] = None) -> bool:
        """Check that the tables ``version`` relies on exist."""
        version = version or self.plan.current_version
        tables = self.plan.tables_for(version)
        missing = [t for t in tables if not store.table_exists(t)]
        if missing:
            logger.warning(f"Schema {version} is missing tables: {', '.join(missing)}")
        return not missing

    def migrate_store(
        self,
        store: IndexStore,
        note_source: NoteSource,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> MigrationResult:
        """Migrate ``store`` starting from the version recorded in it."""
        return self.check_and_migrate(
            store.get_schema_version(), store, note_source, progress_callback
        )
