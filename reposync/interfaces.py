"""
Collaborator contracts used by the sync engine.

Any object with matching methods satisfies a contract; adapters over
GitHub, Qdrant, Slack and the embedding providers live in their own modules,
and tests use in-memory fakes.
"""

from __future__ import annotations

from typing import Callable, Optional, Protocol, Sequence

from .models import (
    ChangeRecord,
    CheckpointEntry,
    Chunk,
    FileListing,
    NotificationPayload,
    Project,
    Repository,
    VectorRecord,
)


class ChangeDetector(Protocol):
    """Discovers repositories and reports which files changed."""

    def list_repositories(self, organization: str, keyword: str = "") -> list[Repository]:
        """List repositories in an organization whose name contains keyword.

        An empty list is a valid answer, not an error.
        """
        ...

    def diff(
        self,
        repository: Repository,
        prior_revision: Optional[str],
        include: Optional[Callable[[str], bool]] = None,
    ) -> list[ChangeRecord]:
        """Get change records since prior_revision.

        Args:
            repository: Repository to diff.
            prior_revision: Revision marker from the last sync, or None.
            include: Optional path predicate. Paths it rejects are reported
                without content and are never fetched.

        Returns:
            Change records. None as prior revision yields every file as
            ``added``; a prior revision equal to the current head yields [].
            A file whose content could not be fetched is reported with
            ``error`` set instead of failing the whole diff.
        """
        ...

    def list_files(self, repository: Repository) -> list[FileListing]:
        """List every file in the repository's default branch with its blob revision."""
        ...

    def fetch_file(self, repository: Repository, path: str) -> Optional[ChangeRecord]:
        """Fetch the current content of one file, or None if it no longer exists.

        A fetch failure is reported as a record with ``error`` set.
        """
        ...


class Chunker(Protocol):
    def chunk(self, record: ChangeRecord, max_size: int, overlap: int) -> list[Chunk]:
        """Split one record's content into ordered chunks. Empty content gives []."""
        ...


class Vectorizer(Protocol):
    """Turns texts into fixed-length vectors."""

    @property
    def dimension(self) -> int:
        ...

    def vectorize(self, texts: Sequence[str]) -> list[list[float]]:
        """Vectorize a batch, same order and count as input. Fails as a whole."""
        ...


class IndexWriter(Protocol):
    """Writes vectors into a namespaced index."""

    def upsert(self, records: Sequence[VectorRecord]) -> int:
        """Upsert records sharing one namespace, all or nothing. Returns count written."""
        ...

    def delete(self, ids: Sequence[str], namespace: str) -> None:
        """Delete by id. Missing ids are not errors."""
        ...


class CheckpointStore(Protocol):
    """Durable per-file sync state keyed by (project, repository, path)."""

    def get(self, project_id: str, repository: str, path: str) -> Optional[CheckpointEntry]:
        ...

    def list_for_project(self, project_id: str) -> list[CheckpointEntry]:
        ...

    def list_for_repository(self, project_id: str, repository: str) -> list[CheckpointEntry]:
        ...

    def save(self, entry: CheckpointEntry) -> None:
        ...

    def delete(self, project_id: str, repository: str, path: str) -> bool:
        ...


class RunLeaseStore(Protocol):
    """Shared lease table that keeps runs of one project from overlapping across processes."""

    def acquire_run_lease(self, project_id: str, owner: str, ttl_seconds: float) -> bool:
        ...

    def renew_run_lease(self, project_id: str, owner: str, ttl_seconds: float) -> bool:
        ...

    def release_run_lease(self, project_id: str, owner: str) -> None:
        ...


class Notifier(Protocol):
    def notify(self, payload: NotificationPayload) -> None:
        """Deliver a run summary. Failures must not abort the run."""
        ...


class ProjectCatalog(Protocol):
    """Source of project definitions."""

    def get_project(self, project_id: str) -> Optional[Project]:
        ...

    def get_enabled_projects(self) -> list[Project]:
        ...
