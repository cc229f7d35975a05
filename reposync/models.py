"""
Data model for RepoSync.

Projects come from configuration and are read-only during a run. Repositories,
change records, chunks and vector records live only for the duration of one
run. Checkpoint entries are the only state that outlives a run.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class DiffStrategy(str, Enum):
    """How a project detects changed files between runs."""
    REPOSITORY = "repository"  # compare repository head against a marker
    PER_FILE = "per_file"      # compare each file's blob revision


class ChangeKind(str, Enum):
    """Kind of change for one file."""
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class CheckpointStatus(str, Enum):
    SYNCED = "synced"
    FAILED = "failed"


class RunPhase(str, Enum):
    """Phases of a sync run."""
    PENDING = "pending"
    DISCOVERING = "discovering"
    DIFFING = "diffing"
    FILTERING = "filtering"
    PROCESSING = "processing"
    PERSISTING = "persisting"
    REPORTING = "reporting"
    DONE = "done"
    FAILED = "failed"


class Classification(str, Enum):
    """Outcome classification handed to the notifier."""
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


# =============================================================================
# Configuration-owned
# =============================================================================

@dataclass(frozen=True)
class Project:
    """A logical sync target: one organization scope feeding one namespace."""
    id: str
    name: str
    organization: str
    filter_keyword: str = ""
    namespace: str = ""
    enabled: bool = True
    allowed_extensions: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    diff_strategy: DiffStrategy = DiffStrategy.REPOSITORY

    def __post_init__(self):
        if not self.namespace:
            object.__setattr__(self, "namespace", f"reposync_{self.id}")


# =============================================================================
# Run-scoped
# =============================================================================

@dataclass
class Repository:
    """A discovered repository. Rebuilt on every run."""
    id: int
    name: str
    full_name: str
    owner: str
    default_branch: str = "main"
    head_revision: str = ""
    updated_at: Optional[datetime] = None
    private: bool = False


@dataclass
class ChangeRecord:
    """One file's change within a repository for this run."""
    repository: str  # full name, e.g. "acme/docs"
    path: str
    kind: ChangeKind
    content: Optional[str] = None
    revision: str = ""
    last_modified: Optional[datetime] = None
    size: int = 0
    error: str = ""  # set when the content could not be fetched

    @property
    def extension(self) -> str:
        return os.path.splitext(self.path)[1]

    @property
    def key(self) -> tuple[str, str]:
        return (self.repository, self.path)


@dataclass(frozen=True)
class FileListing:
    """One entry of a repository's current file tree."""
    path: str
    revision: str
    size: int = 0


@dataclass
class Chunk:
    """
    One slice of a file's text.

    The id depends only on repository, path and ordinal, so re-chunking an
    unchanged file reproduces the same ids.
    """
    id: str
    repository: str
    path: str
    ordinal: int
    total: int
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorRecord:
    """A chunk with its vector, bound for one namespace."""
    chunk: Chunk
    vector: list[float]
    namespace: str

    @property
    def id(self) -> str:
        return self.chunk.id

    def payload(self) -> dict[str, Any]:
        """Payload stored alongside the vector in the index."""
        return {
            **self.chunk.metadata,
            "chunk_id": self.chunk.id,
            "content": self.chunk.text,
        }


# =============================================================================
# Persistent
# =============================================================================

@dataclass
class CheckpointEntry:
    """
    Durable record of the last synced state of one file.

    A FAILED entry keeps the revision and chunk count of the last successful
    sync (empty revision and zero chunks when there never was one).
    """
    project_id: str
    repository: str
    path: str
    revision: str
    chunk_count: int
    status: CheckpointStatus = CheckpointStatus.SYNCED
    last_synced_at: Optional[datetime] = None
    error: str = ""

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.project_id, self.repository, self.path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "repository": self.repository,
            "path": self.path,
            "revision": self.revision,
            "chunk_count": self.chunk_count,
            "status": self.status.value,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "error": self.error,
        }


# =============================================================================
# Run outcome
# =============================================================================

@dataclass(frozen=True)
class RunResult:
    """Immutable summary of a finished sync run."""
    project_id: str
    incremental: bool
    start_time: datetime
    end_time: datetime
    duration_seconds: float
    repositories_scanned: int = 0
    files_discovered: int = 0
    files_changed: int = 0
    files_processed: int = 0
    files_failed: int = 0
    files_deleted: int = 0
    chunks_created: int = 0
    embeddings_generated: int = 0
    vectors_upserted: int = 0
    vectors_deleted: int = 0
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    success: bool = True
    canceled: bool = False
    phase: RunPhase = RunPhase.DONE
    run_id: str = ""
    fatal_error_type: str = ""  # exception class name when the run failed

    @property
    def classification(self) -> Classification:
        if self.errors:
            return Classification.ERROR
        if self.warnings:
            return Classification.WARNING
        return Classification.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["start_time"] = self.start_time.isoformat()
        data["end_time"] = self.end_time.isoformat()
        data["errors"] = list(self.errors)
        data["warnings"] = list(self.warnings)
        data["phase"] = self.phase.value
        data["classification"] = self.classification.value
        return data


@dataclass(frozen=True)
class NotificationPayload:
    """What the notifier receives once per run."""
    classification: Classification
    title: str
    message: str
    result: RunResult
