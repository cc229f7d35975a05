"""
RepoSync

Keeps vector index namespaces in sync with the contents of GitHub
repositories. Each project scopes an organization (optionally narrowed by a
repository-name keyword) and feeds one namespace.

Features:
- Incremental sync driven by per-file checkpoints
- Two change-detection strategies (repository head or per-file revision)
- Bounded worker pool with per-file failure isolation
- One run per project at a time, cooperative cancellation
- Slack notification of every run outcome
"""

from .config import (
    Config,
    GitHubConfig,
    ProcessingConfig,
    CheckpointConfig,
    QdrantConfig,
    EmbeddingConfig,
    SchedulerConfig,
    ServerConfig,
)
from .models import (
    Project,
    Repository,
    ChangeRecord,
    ChangeKind,
    Chunk,
    VectorRecord,
    CheckpointEntry,
    CheckpointStatus,
    DiffStrategy,
    RunPhase,
    RunResult,
    Classification,
    NotificationPayload,
)
from .checkpoint import SQLiteCheckpointStore
from .chunker import TextChunker, chunk_id, split_text
from .diff import RepositoryRevisionDiff, PerFileRevisionDiff, build_policy
from .engine import SyncEngine, EngineSettings, CancelToken, build_notification
from .github_client import GitHubClient, CommitInfo
from .locks import RunLockRegistry
from .qdrant_store import QdrantIndexWriter
from .embedder import SentenceTransformerVectorizer, AzureOpenAIVectorizer
from .notifier import SlackWebhookNotifier, LogNotifier
from .factory import Components, build_components
from .utils import (
    setup_logging,
    retry,
    RepoSyncError,
    FatalSyncError,
    ProjectNotFoundError,
    ProjectDisabledError,
    RunLockError,
    DiscoveryError,
    GitHubAPIError,
    GitHubAuthError,
    ChunkingError,
    EmbeddingError,
    IndexWriteError,
    CheckpointError,
    NotificationError,
    ConfigError,
    IllegalTransitionError,
)

__version__ = "0.1.0"

__all__ = [
    # Config
    "Config",
    "GitHubConfig",
    "ProcessingConfig",
    "CheckpointConfig",
    "QdrantConfig",
    "EmbeddingConfig",
    "SchedulerConfig",
    "ServerConfig",
    # Models
    "Project",
    "Repository",
    "ChangeRecord",
    "ChangeKind",
    "Chunk",
    "VectorRecord",
    "CheckpointEntry",
    "CheckpointStatus",
    "DiffStrategy",
    "RunPhase",
    "RunResult",
    "Classification",
    "NotificationPayload",
    # Checkpoints
    "SQLiteCheckpointStore",
    # Chunking
    "TextChunker",
    "chunk_id",
    "split_text",
    # Change detection
    "RepositoryRevisionDiff",
    "PerFileRevisionDiff",
    "build_policy",
    "GitHubClient",
    "CommitInfo",
    # Engine
    "SyncEngine",
    "EngineSettings",
    "CancelToken",
    "RunLockRegistry",
    "build_notification",
    # Adapters
    "QdrantIndexWriter",
    "SentenceTransformerVectorizer",
    "AzureOpenAIVectorizer",
    "SlackWebhookNotifier",
    "LogNotifier",
    "Components",
    "build_components",
    # Utils
    "setup_logging",
    "retry",
    "RepoSyncError",
    "FatalSyncError",
    "ProjectNotFoundError",
    "ProjectDisabledError",
    "RunLockError",
    "DiscoveryError",
    "GitHubAPIError",
    "GitHubAuthError",
    "ChunkingError",
    "EmbeddingError",
    "IndexWriteError",
    "CheckpointError",
    "NotificationError",
    "ConfigError",
    "IllegalTransitionError",
]
