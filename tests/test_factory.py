"""
Tests for wiring components from configuration.
"""

import pytest

from reposync.checkpoint import SQLiteCheckpointStore
from reposync.config import Config
from reposync.factory import build_locks, build_notifier, build_vectorizer, engine_settings
from reposync.notifier import LogNotifier, SlackWebhookNotifier
from reposync.utils import ConfigError


class TestFactory:
    def test_engine_settings_follow_processing_config(self):
        config = Config()
        config.processing.max_workers = 8
        config.processing.upsert_batch_size = 25

        settings = engine_settings(config)

        assert settings.max_workers == 8
        assert settings.upsert_batch_size == 25
        assert settings.max_chunk_size == config.processing.max_chunk_size

    def test_notifier_without_webhook_logs(self):
        assert isinstance(build_notifier(Config()), LogNotifier)

    def test_notifier_with_webhook(self):
        config = Config()
        config.notification.slack_webhook_url = "https://hooks.slack.test/x"
        assert isinstance(build_notifier(config), SlackWebhookNotifier)

    def test_unknown_embedding_provider(self):
        config = Config()
        config.embedding.provider = "mystery"
        with pytest.raises(ConfigError):
            build_vectorizer(config)

    def test_locks_lease_through_checkpoint_database(self, tmp_path):
        config = Config()
        config.processing.lock_lease_seconds = 120
        store = SQLiteCheckpointStore(tmp_path / "metadata.db")

        locks = build_locks(config, store)

        assert locks.leases is store
        assert locks.lease_seconds == 120
        assert locks.acquire("docs")
        assert store.get_run_lease("docs")["owner"] == locks.owner
        locks.release("docs")
