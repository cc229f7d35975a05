"""
Incremental diff policies.

Both policies turn a repository plus its checkpoints into a list of change
records; the engine does not know which one ran. A project picks one policy
and keeps it for every run.

- RepositoryRevisionDiff: one round trip comparing the last synced head
  against the current head. Coarse, cheap.
- PerFileRevisionDiff: compares every file's blob revision against its own
  checkpoint. Precise, one checkpoint read per repository and one content
  fetch per changed file.
"""

from __future__ import annotations

from typing import Callable, Optional

from loguru import logger

from .filters import is_included
from .interfaces import ChangeDetector, CheckpointStore
from .models import (
    ChangeKind,
    ChangeRecord,
    CheckpointEntry,
    CheckpointStatus,
    DiffStrategy,
    Project,
    Repository,
)


class DiffPolicy:
    """Base class for diff policies."""

    strategy: DiffStrategy

    def __init__(self, detector: ChangeDetector, checkpoints: CheckpointStore):
        self.detector = detector
        self.checkpoints = checkpoints

    def changes(
        self,
        project: Project,
        repository: Repository,
        incremental: bool,
    ) -> list[ChangeRecord]:
        """
        Compute the change records for one repository.

        Args:
            project: Project being synced.
            repository: Repository to diff.
            incremental: If False, prior revisions are ignored for change
                detection. Checkpointed paths that no longer exist are still
                reported as removed.

        Returns:
            Change records for this run.
        """
        raise NotImplementedError

    @staticmethod
    def _filter(project: Project) -> Callable[[str], bool]:
        return lambda path: is_included(path, project.allowed_extensions, project.exclude_patterns)

    @staticmethod
    def _removed(entry: CheckpointEntry) -> ChangeRecord:
        return ChangeRecord(
            repository=entry.repository,
            path=entry.path,
            kind=ChangeKind.REMOVED,
            revision=entry.revision,
        )


class RepositoryRevisionDiff(DiffPolicy):
    """
    Diff at repository granularity.

    The marker is the revision of the most recently synced checkpoint in the
    repository. Files whose checkpoint is FAILED are fetched again even when
    the diff does not mention them, so a failed file is retried until it
    succeeds.
    """

    strategy = DiffStrategy.REPOSITORY

    @staticmethod
    def marker(entries: list[CheckpointEntry]) -> Optional[str]:
        """Revision of the newest synced checkpoint, or None."""
        synced = [e for e in entries if e.status == CheckpointStatus.SYNCED and e.revision]
        if not synced:
            return None
        newest = max(synced, key=lambda e: e.last_synced_at.isoformat() if e.last_synced_at else "")
        return newest.revision

    def changes(self, project: Project, repository: Repository, incremental: bool) -> list[ChangeRecord]:
        entries = self.checkpoints.list_for_repository(project.id, repository.full_name)

        if not incremental:
            records = self.detector.diff(repository, None, self._filter(project))
            present = {r.path for r in records}
            records.extend(self._removed(e) for e in entries if e.path not in present)
            return records

        prior = self.marker(entries)
        logger.debug(f"{repository.full_name}: diffing from marker {prior or '<none>'}")
        records = self.detector.diff(repository, prior, self._filter(project))

        if prior is None:
            present = {r.path for r in records}
            records.extend(self._removed(e) for e in entries if e.path not in present)
            return records

        seen = {r.path for r in records}
        for entry in entries:
            if entry.status != CheckpointStatus.FAILED or entry.path in seen:
                continue
            retry = self.detector.fetch_file(repository, entry.path)
            if retry is None:
                records.append(self._removed(entry))
            else:
                retry.kind = ChangeKind.MODIFIED
                records.append(retry)
            seen.add(entry.path)

        return records


class PerFileRevisionDiff(DiffPolicy):
    """
    Diff at file granularity.

    Every file in the current listing is compared against its checkpoint:
    no checkpoint means added, a different revision or a FAILED status means
    modified. Content is fetched only for changed files that pass the
    project's filters.
    """

    strategy = DiffStrategy.PER_FILE

    def changes(self, project: Project, repository: Repository, incremental: bool) -> list[ChangeRecord]:
        entries = {
            e.path: e
            for e in self.checkpoints.list_for_repository(project.id, repository.full_name)
        }
        listing = self.detector.list_files(repository)
        include = self._filter(project)

        records: list[ChangeRecord] = []
        for item in listing:
            entry = entries.get(item.path)
            if entry is None:
                kind = ChangeKind.ADDED
            elif not incremental:
                kind = ChangeKind.MODIFIED
            elif entry.status == CheckpointStatus.FAILED or entry.revision != item.revision:
                kind = ChangeKind.MODIFIED
            else:
                continue

            if not include(item.path):
                # Filtered out downstream; skip the content fetch
                records.append(ChangeRecord(
                    repository=repository.full_name,
                    path=item.path,
                    kind=kind,
                    revision=item.revision,
                    size=item.size,
                ))
                continue

            record = self.detector.fetch_file(repository, item.path)
            if record is None:
                logger.warning(f"{repository.full_name}: {item.path} vanished between listing and fetch")
                continue
            record.kind = kind
            record.revision = item.revision
            records.append(record)

        listed = {item.path for item in listing}
        records.extend(self._removed(e) for path, e in entries.items() if path not in listed)
        return records


def build_policy(
    strategy: DiffStrategy,
    detector: ChangeDetector,
    checkpoints: CheckpointStore,
) -> DiffPolicy:
    """Get the diff policy for a strategy."""
    if strategy == DiffStrategy.PER_FILE:
        return PerFileRevisionDiff(detector, checkpoints)
    return RepositoryRevisionDiff(detector, checkpoints)
