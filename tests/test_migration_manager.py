"""Tests for schema versioning and store migration."""
import pytest

from notegraph.exceptions import (ErrorCode, MigrationFailedError,
                                  MigrationNotFoundError)
from notegraph.services.migration_manager import (DEFAULT_MIGRATION_PLAN,
                                                  DatabaseMigration, MigrationManager,
                                                  MigrationPlan, is_version_newer,
                                                  populate_from_source,
                                                  rebuild_from_source)
from notegraph.services.note_source import StoreNoteSource


def linked_notes(source, count):
    """Notes in a ring, every 10th with a URL and every 15th with a dangling link."""
    for i in range(count):
        body = f"Next is [[Note {(i + 1) % count}]]"
        if i % 10 == 0:
            body += f"\nref https://example.com/{i}"
        if i % 15 == 0:
            body += "\nsee [[Unwritten Note]]"
        source.add("general", f"note-{i}.md", f"Note {i}", body)
    return source


class TestVersionOrdering:
    """Tests for version comparison."""

    @pytest.mark.parametrize(
        "version, other, newer",
        [
            ("1.1.0", "1.0.0", True),
            ("1.10.0", "1.9.0", True),
            ("2.0", "1.99.99", True),
            ("1.1", "1.1.0", False),
            ("1.0.0", "1.1.0", False),
        ],
    )
    def test_is_version_newer(self, version, other, newer):
        assert is_version_newer(version, other) is newer

    def test_pending_migrations_sorted_numerically(self):
        plan = MigrationPlan(
            current_version="1.10.0",
            migrations=(
                DatabaseMigration("1.10.0", "ten"),
                DatabaseMigration("1.2.0", "two"),
                DatabaseMigration("1.9.0", "nine"),
            ),
        )
        manager = MigrationManager(plan)
        assert [m.version for m in manager.pending_migrations("1.2.0")] == ["1.9.0", "1.10.0"]


class TestManagerInfo:
    """Tests for introspection helpers."""

    def test_current_version(self):
        assert MigrationManager().get_current_schema_version() == "1.1.0"

    def test_migration_info(self):
        info = MigrationManager().get_migration_info()
        assert info["current_version"] == "1.1.0"
        assert info["baseline_version"] == "1.0.0"
        assert [m.version for m in info["available_migrations"]] == ["1.1.0"]

    def test_validate_schema(self, store):
        manager = MigrationManager()
        assert manager.validate_schema(store) is True
        assert manager.validate_schema(store, "1.0.0") is True

    def test_validate_schema_reports_missing_tables(self, store):
        plan = MigrationPlan(current_version="2.0.0", required_tables={"2.0.0": ("tags",)})
        assert MigrationManager(plan).validate_schema(store) is False


class TestCheckAndMigrate:
    """Tests for upgrading a store."""

    def test_full_upgrade_from_baseline(self, store, memory_source):
        linked_notes(memory_source, 120)
        progress = []
        manager = MigrationManager(link_batch_size=50)

        result = manager.check_and_migrate(
            "1.0.0", store, memory_source,
            progress_callback=lambda done, total: progress.append(done),
        )

        assert result.migrated is True
        assert result.rebuilt_database is True
        assert result.migrated_links is True
        assert result.from_version == "1.0.0"
        assert result.to_version == "1.1.0"
        assert result.executed_migrations == ["1.1.0"]
        assert result.link_summary.processed == 120
        assert result.link_summary.error_count == 0
        assert progress == [50, 100, 120]

        stats = store.get_stats()
        assert stats["notes"] == 120
        assert stats["internal_links"] == 120 + 8
        assert stats["broken_links"] == 8
        assert stats["external_links"] == 12
        assert stats["schema_version"] == "1.1.0"
        assert manager.validate_schema(store, "1.1.0") is True

    def test_ring_links_resolve_forward(self, store, memory_source):
        """Links to notes written later in the run still resolve."""
        linked_notes(memory_source, 5)
        MigrationManager(link_batch_size=2).check_and_migrate("1.0.0", store, memory_source)

        with store.connect_read_only() as conn:
            target = conn.scalar(
                "SELECT target_note_id FROM note_links "
                "WHERE source_note_id = 'general/note-4.md' AND target_title = 'Note 0'"
            )
        assert target == "general/note-0.md"

    def test_unversioned_store_treated_as_baseline(self, store, memory_source):
        linked_notes(memory_source, 3)
        result = MigrationManager().check_and_migrate(None, store, memory_source)
        assert result.from_version == "1.0.0"
        assert result.migrated is True

    def test_idempotent_when_current(self, store, memory_source):
        linked_notes(memory_source, 3)
        manager = MigrationManager()
        manager.check_and_migrate("1.0.0", store, memory_source)
        reads = memory_source.iter_count
        marker = store.get_schema_version()
        before = store.get_stats()

        result = manager.check_and_migrate("1.1.0", store, memory_source)

        assert marker == "1.1.0"
        assert store.get_schema_version() == marker
        assert store.get_stats() == before
        assert result.migrated is False
        assert result.rebuilt_database is False
        assert result.executed_migrations == []
        assert memory_source.iter_count == reads

    def test_newer_store_is_left_alone(self, store, memory_source):
        result = MigrationManager().check_and_migrate("2.0.0", store, memory_source)
        assert result.migrated is False

    def test_no_links_means_links_not_migrated(self, store, memory_source):
        memory_source.add("general", "plain.md", "Plain", "no references")
        result = MigrationManager().check_and_migrate("1.0.0", store, memory_source)
        assert result.migrated is True
        assert result.migrated_links is False

    def test_malformed_declared_version(self, store, memory_source):
        with pytest.raises(MigrationFailedError) as exc_info:
            MigrationManager().check_and_migrate("one.two", store, memory_source)
        assert exc_info.value.code == ErrorCode.MIGRATION_FAILED

    def test_migrate_store_reads_marker(self, store, memory_source):
        linked_notes(memory_source, 2)
        manager = MigrationManager()
        assert manager.migrate_store(store, memory_source).migrated is True
        assert manager.migrate_store(store, memory_source).migrated is False


class TestMigrationFailures:
    """A failing migration is reported, never silently half-applied."""

    @staticmethod
    def failing_plan():
        def boom(conn):
            raise RuntimeError("disk on fire")

        return MigrationPlan(
            current_version="1.2.0",
            migrations=DEFAULT_MIGRATION_PLAN.migrations + (
                DatabaseMigration("1.2.0", "always fails", migration_function=boom),
            ),
        )

    def test_failure_wrapped_with_versions(self, store, memory_source):
        linked_notes(memory_source, 2)
        manager = MigrationManager(self.failing_plan())

        with pytest.raises(MigrationFailedError) as exc_info:
            manager.check_and_migrate("1.0.0", store, memory_source)

        error = exc_info.value
        assert error.from_version == "1.0.0"
        assert error.to_version == "1.2.0"
        assert error.migration_version == "1.2.0"
        assert isinstance(error.original_error, RuntimeError)
        # The completed migration keeps its marker
        assert store.get_schema_version() == "1.1.0"

    def test_migration_function_runs_in_transaction(self, store, memory_source):
        def add_and_fail(conn):
            conn.run("INSERT INTO schema_info (key, value) VALUES ('check', 'x')")
            raise RuntimeError("after write")

        plan = MigrationPlan(
            current_version="1.1.0",
            migrations=(DatabaseMigration("1.1.0", "writes then fails", migration_function=add_and_fail),),
        )
        with pytest.raises(MigrationFailedError):
            MigrationManager(plan).check_and_migrate("1.0.0", store, memory_source)

        with store.connect_read_only() as conn:
            assert conn.scalar("SELECT COUNT(*) FROM schema_info WHERE key = 'check'") == 0
        assert store.get_schema_version() is None


class TestRunSpecificMigration:
    """Tests for operator-selected migrations."""

    def test_unknown_version(self, store, memory_source):
        with pytest.raises(MigrationNotFoundError) as exc_info:
            MigrationManager().run_specific_migration("9.9.9", store, memory_source)
        assert exc_info.value.code == ErrorCode.MIGRATION_NOT_FOUND

    def test_reruns_and_advances_marker(self, store, memory_source):
        linked_notes(memory_source, 4)
        MigrationManager().run_specific_migration("1.1.0", store, memory_source)

        stats = store.get_stats()
        assert stats["notes"] == 4
        assert stats["internal_links"] == 4 + 1
        assert stats["schema_version"] == "1.1.0"

    def test_failure_wrapped(self, store, memory_source):
        manager = MigrationManager(TestMigrationFailures.failing_plan())
        with pytest.raises(MigrationFailedError) as exc_info:
            manager.run_specific_migration("1.2.0", store, memory_source)
        assert exc_info.value.migration_version == "1.2.0"


class TestPopulateFromSource:
    """Tests for batched re-population."""

    def test_batches_and_pairs(self, store, memory_source):
        for i in range(5):
            memory_source.add("general", f"n{i}.md", f"N{i}", f"body {i}", status="draft")

        pairs = populate_from_source(store, memory_source.iter_notes(), batch_size=2)

        assert pairs == [(f"general/n{i}.md", f"body {i}") for i in range(5)]
        assert store.count_notes() == 5
        assert store.get_metadata("general/n3.md") == {"status": "draft"}

    def test_rejects_zero_batch_size(self, store, memory_source):
        memory_source.add("general", "a.md", "Alpha", "x")
        with pytest.raises(ValueError):
            populate_from_source(store, memory_source.iter_notes(), batch_size=0)
        assert store.count_notes() == 0


class TestRebuildFromStore:
    """Rebuilding from a source backed by the store itself keeps every note."""

    @pytest.fixture
    def indexed(self, add_note):
        add_note("general", "alpha.md", "Alpha", "[[Beta]] https://x.org", status="draft")
        add_note("general", "beta.md", "Beta", "back to [[Alpha]]")

    def test_migrate_store_from_own_notes(self, indexed, store):
        result = MigrationManager().migrate_store(store, StoreNoteSource(store))

        assert result.migrated is True
        assert result.rebuilt_database is True
        assert result.migrated_links is True
        stats = store.get_stats()
        assert stats["notes"] == 2
        assert stats["internal_links"] == 2
        assert stats["broken_links"] == 0
        assert stats["external_links"] == 1
        assert stats["schema_version"] == "1.1.0"
        assert store.get_metadata("general/alpha.md") == {"status": "draft"}
        assert store.get_note("general/beta.md").content == "back to [[Alpha]]"

    def test_rebuild_from_source_reads_before_emptying(self, indexed, store):
        pairs = rebuild_from_source(store, StoreNoteSource(store))
        assert [note_id for note_id, _ in pairs] == ["general/alpha.md", "general/beta.md"]
        assert store.count_notes() == 2

    def test_invalid_batch_size_leaves_store_untouched(self, indexed, store):
        with pytest.raises(ValueError):
            rebuild_from_source(store, StoreNoteSource(store), batch_size=0)
        assert store.count_notes() == 2
