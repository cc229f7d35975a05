"""
Tests for the SQLite checkpoint store.
"""

from datetime import datetime, timedelta, timezone

from reposync.checkpoint import SQLiteCheckpointStore
from reposync.models import CheckpointEntry, CheckpointStatus


def _entry(path="a.md", repository="acme/docs", project_id="docs", **kwargs):
    values = dict(
        project_id=project_id,
        repository=repository,
        path=path,
        revision="rev1",
        chunk_count=3,
    )
    values.update(kwargs)
    return CheckpointEntry(**values)


class TestSQLiteCheckpointStore:
    def test_save_and_get(self, store):
        synced_at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        store.save(_entry(last_synced_at=synced_at))

        entry = store.get("docs", "acme/docs", "a.md")

        assert entry.revision == "rev1"
        assert entry.chunk_count == 3
        assert entry.status == CheckpointStatus.SYNCED
        assert entry.last_synced_at == synced_at
        assert entry.error == ""

    def test_missing_entry(self, store):
        assert store.get("docs", "acme/docs", "missing.md") is None

    def test_save_overwrites(self, store):
        store.save(_entry())
        store.save(_entry(revision="rev2", chunk_count=1, status=CheckpointStatus.FAILED, error="boom"))

        entry = store.get("docs", "acme/docs", "a.md")

        assert entry.revision == "rev2"
        assert entry.chunk_count == 1
        assert entry.status == CheckpointStatus.FAILED
        assert entry.error == "boom"
        assert len(store.list_for_project("docs")) == 1

    def test_save_stamps_time_when_missing(self, store):
        store.save(_entry())
        assert store.get("docs", "acme/docs", "a.md").last_synced_at is not None

    def test_projects_are_isolated(self, store):
        store.save(_entry(project_id="docs"))
        store.save(_entry(project_id="blog", revision="other"))

        assert store.get("docs", "acme/docs", "a.md").revision == "rev1"
        assert store.get("blog", "acme/docs", "a.md").revision == "other"

    def test_list_for_project_is_ordered(self, store):
        store.save(_entry("b.md", repository="acme/zeta"))
        store.save(_entry("b.md"))
        store.save(_entry("a.md"))

        keys = [(e.repository, e.path) for e in store.list_for_project("docs")]

        assert keys == [("acme/docs", "a.md"), ("acme/docs", "b.md"), ("acme/zeta", "b.md")]

    def test_list_for_repository(self, store):
        store.save(_entry("a.md"))
        store.save(_entry("b.md", repository="acme/other"))

        entries = store.list_for_repository("docs", "acme/docs")

        assert [e.path for e in entries] == ["a.md"]

    def test_delete(self, store):
        store.save(_entry())

        assert store.delete("docs", "acme/docs", "a.md") is True
        assert store.delete("docs", "acme/docs", "a.md") is False
        assert store.get("docs", "acme/docs", "a.md") is None

    def test_stats(self, store):
        now = datetime.now(timezone.utc)
        store.save(_entry("a.md", chunk_count=2, last_synced_at=now - timedelta(hours=1)))
        store.save(_entry("b.md", chunk_count=4, status=CheckpointStatus.FAILED, last_synced_at=now))
        store.save(_entry("c.md", repository="acme/other", chunk_count=1))

        stats = store.get_stats("docs")

        assert stats["file_count"] == 3
        assert stats["repo_count"] == 2
        assert stats["chunk_count"] == 7
        assert stats["by_status"] == {"synced": 2, "failed": 1}
        assert stats["db_size_bytes"] > 0

    def test_persists_across_instances(self, tmp_path):
        db_path = tmp_path / "nested" / "metadata.db"
        SQLiteCheckpointStore(db_path).save(_entry())

        reopened = SQLiteCheckpointStore(db_path, vacuum_on_startup=True)

        assert reopened.get("docs", "acme/docs", "a.md").revision == "rev1"


class TestRunLeases:
    def test_acquire_free_lease(self, store):
        assert store.acquire_run_lease("docs", "host:1", 60)

        lease = store.get_run_lease("docs")
        assert lease["owner"] == "host:1"
        assert lease["expires_at"] > lease["acquired_at"]

    def test_live_lease_excludes_other_owner(self, store):
        store.acquire_run_lease("docs", "host:1", 60)

        assert not store.acquire_run_lease("docs", "host:2", 60)
        assert store.acquire_run_lease("docs", "host:1", 60)
        assert store.acquire_run_lease("blog", "host:2", 60)

    def test_expired_lease_changes_owner(self, store):
        store.acquire_run_lease("docs", "host:1", 0)

        assert store.acquire_run_lease("docs", "host:2", 60)
        assert store.get_run_lease("docs")["owner"] == "host:2"

    def test_renew_only_by_owner(self, store):
        store.acquire_run_lease("docs", "host:1", 60)
        before = store.get_run_lease("docs")["expires_at"]

        assert store.renew_run_lease("docs", "host:1", 600)
        assert store.get_run_lease("docs")["expires_at"] > before
        assert not store.renew_run_lease("docs", "host:2", 600)

    def test_release_only_by_owner(self, store):
        store.acquire_run_lease("docs", "host:1", 60)

        store.release_run_lease("docs", "host:2")
        assert store.get_run_lease("docs") is not None

        store.release_run_lease("docs", "host:1")
        assert store.get_run_lease("docs") is None
