"""
Wires a SyncEngine from configuration.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .checkpoint import SQLiteCheckpointStore
from .chunker import TextChunker
from .config import Config
from .embedder import AzureOpenAIVectorizer, SentenceTransformerVectorizer
from .engine import EngineSettings, SyncEngine
from .github_client import GitHubClient
from .locks import RunLockRegistry
from .notifier import LogNotifier, SlackWebhookNotifier
from .qdrant_store import QdrantIndexWriter
from .utils import ConfigError


def engine_settings(config: Config) -> EngineSettings:
    proc = config.processing
    return EngineSettings(
        max_workers=proc.max_workers,
        max_chunk_size=proc.max_chunk_size,
        chunk_overlap=proc.chunk_overlap,
        embedding_batch_size=proc.embedding_batch_size,
        upsert_batch_size=proc.upsert_batch_size,
        lock_timeout_seconds=proc.lock_timeout_seconds,
    )


def build_vectorizer(config: Config):
    emb = config.embedding
    if emb.provider == "azure":
        return AzureOpenAIVectorizer(
            endpoint=emb.azure_endpoint,
            api_key=emb.azure_api_key,
            deployment=emb.azure_deployment,
            api_version=emb.azure_api_version,
            dimension=emb.dimension,
        )
    if emb.provider == "local":
        return SentenceTransformerVectorizer(model_name=emb.model)
    raise ConfigError(f"Unknown embedding provider: {emb.provider}")


def build_locks(config: Config, checkpoints: SQLiteCheckpointStore) -> RunLockRegistry:
    return RunLockRegistry(leases=checkpoints, lease_seconds=config.processing.lock_lease_seconds)


def build_notifier(config: Config):
    if config.notification.slack_webhook_url:
        return SlackWebhookNotifier(config.notification.slack_webhook_url)
    logger.warning("Slack webhook URL not configured, notifications go to the log only")
    return LogNotifier()


@dataclass
class Components:
    """A wired engine plus the resources it owns."""
    engine: SyncEngine
    github: GitHubClient
    index: QdrantIndexWriter
    checkpoints: SQLiteCheckpointStore

    def close(self) -> None:
        """Close all connections."""
        self.github.close()
        self.index.close()
        self.checkpoints.close()

    def __enter__(self) -> "Components":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def build_components(config: Config, locks: Optional[RunLockRegistry] = None) -> Components:
    """
    Build every collaborator from configuration and wire the engine.

    Args:
        config: Loaded configuration. Also used as the project catalog.
        locks: Run lock registry to share with other engines. By default a
            registry leasing runs through the checkpoint database is built,
            so runs from other processes on the same database are excluded.
    """
    checkpoints = SQLiteCheckpointStore(config.checkpoints.path, config.checkpoints.vacuum_on_startup)
    github = GitHubClient(
        token=config.github.token or None,
        base_url=config.github.api_url,
        max_retries=config.github.max_retries,
    )
    if locks is None:
        locks = build_locks(config, checkpoints)
    vectorizer = build_vectorizer(config)
    index = QdrantIndexWriter(
        host=config.qdrant.host,
        port=config.qdrant.port,
        api_key=config.qdrant.api_key or None,
        vector_size=vectorizer.dimension,
        distance=config.qdrant.distance,
    )

    engine = SyncEngine(
        catalog=config,
        detector=github,
        chunker=TextChunker(),
        vectorizer=vectorizer,
        index=index,
        checkpoints=checkpoints,
        notifier=build_notifier(config),
        settings=engine_settings(config),
        locks=locks,
    )
    logger.info(f"SyncEngine initialized with {len(config.get_enabled_projects())} enabled projects")
    return Components(engine=engine, github=github, index=index, checkpoints=checkpoints)
