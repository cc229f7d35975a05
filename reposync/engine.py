"""
Sync orchestration engine.

One run walks a fixed set of phases:

    discovering → diffing → filtering → processing → persisting → reporting → done

with discovering, diffing and processing allowed to jump to failed on a
fatal error. Failures below the run level are collected as warnings:
- a repository whose diff fails is skipped
- a file whose chunking or vectorizing fails is skipped
- an index batch that fails leaves its files' checkpoints unadvanced

Key guarantees:
- A file's checkpoint advances only after its vectors were written
- Running twice with no source changes writes nothing the second time
- Chunk ids depend on repository, path and ordinal only
- Two runs of the same project never overlap
- Callers always get a RunResult; run failures never raise
"""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from loguru import logger

from .chunker import chunk_ids
from .diff import build_policy
from .filters import partition_changes
from .interfaces import (
    ChangeDetector,
    CheckpointStore,
    Chunker,
    IndexWriter,
    Notifier,
    ProjectCatalog,
    Vectorizer,
)
from .locks import RunLockRegistry
from .models import (
    ChangeKind,
    ChangeRecord,
    CheckpointEntry,
    CheckpointStatus,
    Classification,
    NotificationPayload,
    Project,
    Repository,
    RunPhase,
    RunResult,
    VectorRecord,
)
from .utils import (
    CheckpointError,
    DiscoveryError,
    EmbeddingError,
    FatalSyncError,
    IllegalTransitionError,
    ProjectDisabledError,
    ProjectNotFoundError,
    Timer,
)


CANCELED = "canceled"

# Allowed phase transitions
TRANSITIONS: dict[RunPhase, frozenset[RunPhase]] = {
    RunPhase.PENDING: frozenset({RunPhase.DISCOVERING, RunPhase.FAILED}),
    RunPhase.DISCOVERING: frozenset({RunPhase.DIFFING, RunPhase.FAILED}),
    RunPhase.DIFFING: frozenset({RunPhase.FILTERING, RunPhase.FAILED}),
    RunPhase.FILTERING: frozenset({RunPhase.PROCESSING}),
    RunPhase.PROCESSING: frozenset({RunPhase.PERSISTING, RunPhase.FAILED}),
    RunPhase.PERSISTING: frozenset({RunPhase.REPORTING}),
    RunPhase.REPORTING: frozenset({RunPhase.DONE}),
    RunPhase.DONE: frozenset(),
    RunPhase.FAILED: frozenset(),
}


@dataclass
class EngineSettings:
    """Tunables for one engine instance."""
    max_workers: int = 5
    max_chunk_size: int = 1000
    chunk_overlap: int = 200
    embedding_batch_size: int = 100
    upsert_batch_size: int = 100
    lock_timeout_seconds: float = 0.0


class CancelToken:
    """
    Caller-supplied cancellation signal with an optional deadline.

    Workers check it before starting a file; a file already in progress
    always finishes.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_canceled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False


# =============================================================================
# Run-scoped shared state
# =============================================================================

class RunStats:
    """Run counters and messages. Every update takes the lock."""

    COUNTERS = (
        "repositories_scanned",
        "files_discovered",
        "files_changed",
        "files_processed",
        "files_failed",
        "files_deleted",
        "chunks_created",
        "embeddings_generated",
        "vectors_upserted",
        "vectors_deleted",
    )

    def __init__(self):
        self._lock = threading.Lock()
        self._counts = {name: 0 for name in self.COUNTERS}
        self._errors: list[str] = []
        self._warnings: list[str] = []

    def add(self, **counts: int) -> None:
        with self._lock:
            for name, value in counts.items():
                self._counts[name] += value

    def warn(self, message: str) -> None:
        with self._lock:
            self._warnings.append(message)

    def error(self, message: str) -> None:
        with self._lock:
            self._errors.append(message)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                **self._counts,
                "errors": tuple(self._errors),
                "warnings": tuple(self._warnings),
            }


@dataclass
class FileVectors:
    """All vectors of one file, written together in one batch."""
    record: ChangeRecord
    previous: Optional[CheckpointEntry]
    vectors: list[VectorRecord] = field(default_factory=list)


class VectorAccumulator:
    """
    Collects whole files until enough vectors are pending for a batch.

    ``add`` hands back a drained batch to the caller that crossed the
    threshold; the caller writes it after the lock is released.
    """

    def __init__(self, threshold: int):
        self.threshold = max(1, threshold)
        self._lock = threading.Lock()
        self._pending: list[FileVectors] = []
        self._count = 0

    def add(self, group: FileVectors) -> Optional[list[FileVectors]]:
        with self._lock:
            self._pending.append(group)
            self._count += len(group.vectors)
            if self._count >= self.threshold:
                return self._drain_locked()
        return None

    def drain(self) -> list[FileVectors]:
        with self._lock:
            return self._drain_locked()

    def _drain_locked(self) -> list[FileVectors]:
        batch, self._pending, self._count = self._pending, [], 0
        return batch


class SyncRun:
    """Mutable state of one run."""

    def __init__(
        self,
        project_id: str,
        incremental: bool,
        cancel: Optional[CancelToken],
        upsert_batch_size: int,
        log,
    ):
        self.run_id = uuid.uuid4().hex[:8]
        self.project_id = project_id
        self.incremental = incremental
        self.cancel = cancel or CancelToken()
        self.project: Optional[Project] = None
        self.phase = RunPhase.PENDING
        self.stats = RunStats()
        self.accumulator = VectorAccumulator(upsert_batch_size)
        self.start_time = datetime.now(timezone.utc)
        self.timer = Timer(f"run {self.run_id}").start()
        self.log = log.bind(project=project_id, run_id=self.run_id)
        self.fatal_error_type = ""
        # Set once a repository or file is left undone because of a cancel
        self.interrupted = False
        self._fatal: Optional[BaseException] = None
        self._fatal_lock = threading.Lock()

    def transition(self, phase: RunPhase) -> None:
        if phase not in TRANSITIONS[self.phase]:
            raise IllegalTransitionError(f"{self.phase.value} → {phase.value}")
        self.log.info(f"Run {self.run_id}: {self.phase.value} → {phase.value}")
        self.phase = phase

    def abort(self, error: BaseException) -> None:
        """Record the first fatal error seen by a worker."""
        with self._fatal_lock:
            if self._fatal is None:
                self._fatal = error

    @property
    def fatal(self) -> Optional[BaseException]:
        with self._fatal_lock:
            return self._fatal

    @property
    def should_stop(self) -> bool:
        return self.cancel.is_canceled or self.fatal is not None

    def finish(self) -> RunResult:
        """Freeze the counters. Only called after every worker is done."""
        duration = self.timer.stop()
        snapshot = self.stats.snapshot()
        canceled = self.interrupted and self.phase != RunPhase.FAILED
        errors = snapshot.pop("errors")
        if canceled:
            errors = errors + (CANCELED,)
        warnings = snapshot.pop("warnings")
        phase = RunPhase.DONE if self.phase == RunPhase.REPORTING else self.phase

        return RunResult(
            project_id=self.project_id,
            incremental=self.incremental,
            start_time=self.start_time,
            end_time=datetime.now(timezone.utc),
            duration_seconds=duration,
            errors=errors,
            warnings=warnings,
            success=not errors,
            canceled=canceled,
            phase=phase,
            run_id=self.run_id,
            fatal_error_type=self.fatal_error_type,
            **snapshot,
        )


# =============================================================================
# Engine
# =============================================================================

class SyncEngine:
    """
    Keeps each project's namespace in the vector index in step with its
    repositories.

    Collaborators are passed in; the engine holds no global state besides
    the per-project run locks.
    """

    def __init__(
        self,
        catalog: ProjectCatalog,
        detector: ChangeDetector,
        chunker: Chunker,
        vectorizer: Vectorizer,
        index: IndexWriter,
        checkpoints: CheckpointStore,
        notifier: Notifier,
        settings: Optional[EngineSettings] = None,
        locks: Optional[RunLockRegistry] = None,
        log=None,
    ):
        """
        Initialize the engine.

        Args:
            catalog: Project definitions.
            detector: Repository discovery and change detection.
            chunker: Splits file content into chunks.
            vectorizer: Turns chunk texts into vectors.
            index: Vector index writer.
            checkpoints: Durable per-file sync state.
            notifier: Receives one summary per run.
            settings: Pool size, chunking and batching parameters.
            locks: Run lock registry, shared if several engines serve the
                same projects.
            log: loguru logger to write to.
        """
        self.catalog = catalog
        self.detector = detector
        self.chunker = chunker
        self.vectorizer = vectorizer
        self.index = index
        self.checkpoints = checkpoints
        self.notifier = notifier
        self.settings = settings or EngineSettings()
        self.locks = locks or RunLockRegistry()
        self.log = log or logger.bind(component="engine")

    # =========================================================================
    # Entry Points
    # =========================================================================

    def run_sync(
        self,
        project_id: str,
        incremental: bool = True,
        cancel: Optional[CancelToken] = None,
    ) -> RunResult:
        """
        Run one sync of a project.

        Args:
            project_id: Project to sync.
            incremental: If False, every file is reprocessed regardless of
                its checkpoint.
            cancel: Optional cancellation token.

        Returns:
            The finished RunResult. Fatal failures are reported in it rather
            than raised.
        """
        run = SyncRun(
            project_id,
            incremental,
            cancel,
            self.settings.upsert_batch_size,
            self.log,
        )
        run.log.info(
            f"Starting {'incremental' if incremental else 'full'} sync "
            f"for project {project_id} (run {run.run_id})"
        )

        try:
            run.project = self._resolve_project(project_id)
            with self.locks.hold(project_id, self.settings.lock_timeout_seconds):
                self._execute(run)
        except IllegalTransitionError:
            raise
        except FatalSyncError as e:
            self._fail(run, e)
        except Exception as e:
            run.log.exception(f"Unexpected error in run {run.run_id}")
            self._fail(run, e)

        result = run.finish()
        self._report(run, result)
        return result

    def run_all(self, incremental: bool = True) -> list[RunResult]:
        """Sync every enabled project, one after another."""
        results = []
        for project in self.catalog.get_enabled_projects():
            results.append(self.run_sync(project.id, incremental))
        return results

    @staticmethod
    def validate_result(result: RunResult) -> list[str]:
        """
        Check a finished result for internal consistency.
        Empty list means the result is consistent.
        """
        problems = []
        if result.vectors_upserted > result.embeddings_generated:
            problems.append(
                f"vectors_upserted ({result.vectors_upserted}) exceeds "
                f"embeddings_generated ({result.embeddings_generated})"
            )
        if result.embeddings_generated > result.chunks_created:
            problems.append(
                f"embeddings_generated ({result.embeddings_generated}) exceeds "
                f"chunks_created ({result.chunks_created})"
            )
        if result.files_processed > result.files_discovered:
            problems.append(
                f"files_processed ({result.files_processed}) exceeds "
                f"files_discovered ({result.files_discovered})"
            )
        if result.end_time < result.start_time:
            problems.append("end_time is before start_time")
        if result.success and result.errors:
            problems.append("successful run carries errors")
        if not result.success and not result.errors:
            problems.append("failed run carries no error")
        return problems

    # =========================================================================
    # Run Phases
    # =========================================================================

    def _resolve_project(self, project_id: str) -> Project:
        project = self.catalog.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        if not project.enabled:
            raise ProjectDisabledError(project_id)
        return project

    def _execute(self, run: SyncRun) -> None:
        project = run.project

        run.transition(RunPhase.DISCOVERING)
        repositories = self._discover(run, project)

        run.transition(RunPhase.DIFFING)
        self._heartbeat(run)
        records = self._diff(run, project, repositories)

        run.transition(RunPhase.FILTERING)
        partition = partition_changes(records, project.allowed_extensions, project.exclude_patterns)
        run.log.info(
            f"{len(partition.valid)} files to process, {len(partition.removed)} removed, "
            f"{len(partition.excluded)} excluded"
        )

        run.transition(RunPhase.PROCESSING)
        self._heartbeat(run)
        for record in partition.removed:
            if run.should_stop:
                self._defer(run, record)
            else:
                self._delete_file(run, record)
        self._process(run, partition.valid)

        fatal = run.fatal
        if fatal is not None:
            raise fatal

        run.transition(RunPhase.PERSISTING)
        self._heartbeat(run)
        self._flush(run)

        run.transition(RunPhase.REPORTING)

    def _discover(self, run: SyncRun, project: Project) -> list[Repository]:
        try:
            repositories = self.detector.list_repositories(project.organization, project.filter_keyword)
        except FatalSyncError:
            raise
        except Exception as e:
            raise DiscoveryError(f"Repository discovery failed for {project.organization}: {e}") from e

        run.stats.add(repositories_scanned=len(repositories))
        run.log.info(f"Discovered {len(repositories)} repositories")
        return repositories

    def _diff(self, run: SyncRun, project: Project, repositories: list[Repository]) -> list[ChangeRecord]:
        policy = build_policy(project.diff_strategy, self.detector, self.checkpoints)
        records: list[ChangeRecord] = []

        for repository in repositories:
            if run.cancel.is_canceled:
                run.log.warning("Run canceled during diffing")
                run.interrupted = True
                break
            try:
                changes = policy.changes(project, repository, run.incremental)
            except FatalSyncError:
                raise
            except Exception as e:
                message = f"Diff failed for {repository.full_name}: {e}"
                run.log.warning(message)
                run.stats.warn(message)
                continue

            run.log.debug(f"{repository.full_name}: {len(changes)} changed files")
            records.extend(changes)

        run.stats.add(files_discovered=len(records), files_changed=len(records))
        return records

    def _process(self, run: SyncRun, records: list[ChangeRecord]) -> None:
        if not records:
            return

        run.stats.add(files_processed=len(records))
        max_workers = max(1, self.settings.max_workers)

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(self._process_file, run, record): record
                for record in records
            }

            for future in as_completed(futures):
                record = futures[future]
                try:
                    future.result()
                except FatalSyncError as e:
                    run.log.error(f"Fatal error while processing {record.path}: {e}")
                    run.abort(e)

        if run.fatal is not None:
            # Files that finished before the abort still get written
            self._flush(run)

    def _heartbeat(self, run: SyncRun) -> None:
        """Renew the run lease so other processes keep seeing this run as live."""
        try:
            held = self.locks.renew(run.project_id)
        except CheckpointError as e:
            run.log.warning(f"Failed to renew run lease: {e}")
            return
        if not held:
            run.log.warning(f"Run lease for {run.project_id} was lost to another process")

    def _fail(self, run: SyncRun, error: BaseException) -> None:
        run.log.error(f"Run {run.run_id} failed: {error}")
        run.stats.error(str(error))
        run.fatal_error_type = type(error).__name__
        run.transition(RunPhase.FAILED)

    # =========================================================================
    # File Processing
    # =========================================================================

    def _process_file(self, run: SyncRun, record: ChangeRecord) -> None:
        """Chunk and vectorize one file, then hand it to the accumulator."""
        if run.should_stop:
            self._defer(run, record)
            return

        if record.error:
            self._fetch_failed(run, record)
            return

        previous = None
        try:
            previous = self.checkpoints.get(run.project_id, record.repository, record.path)
            chunks = self.chunker.chunk(record, self.settings.max_chunk_size, self.settings.chunk_overlap)
            run.stats.add(chunks_created=len(chunks))

            vectors = self._vectorize(run.project, chunks)
            run.stats.add(embeddings_generated=len(vectors))
        except FatalSyncError as e:
            self._mark_failed(run, record, previous, str(e))
            raise
        except Exception as e:
            message = f"Failed to process {record.repository}/{record.path}: {e}"
            run.log.warning(message)
            run.stats.warn(message)
            run.stats.add(files_failed=1)
            self._mark_failed(run, record, previous, str(e))
            return

        batch = run.accumulator.add(FileVectors(record, previous, vectors))
        if batch:
            self._write_batch(run, batch)

    def _fetch_failed(self, run: SyncRun, record: ChangeRecord) -> None:
        message = f"Failed to fetch {record.repository}/{record.path}: {record.error}"
        run.log.warning(message)
        run.stats.warn(message)
        run.stats.add(files_failed=1)
        try:
            previous = self.checkpoints.get(run.project_id, record.repository, record.path)
        except Exception as e:
            run.stats.warn(f"Failed to read checkpoint for {record.repository}/{record.path}: {e}")
            return
        self._mark_failed(run, record, previous, record.error)

    def _vectorize(self, project: Project, chunks) -> list[VectorRecord]:
        texts = [chunk.text for chunk in chunks]
        batch_size = max(1, self.settings.embedding_batch_size)

        vectors: list[list[float]] = []
        for i in range(0, len(texts), batch_size):
            batch = texts[i:i + batch_size]
            result = self.vectorizer.vectorize(batch)
            if len(result) != len(batch):
                raise EmbeddingError(
                    f"Vectorizer returned {len(result)} vectors for {len(batch)} texts"
                )
            vectors.extend(result)

        return [
            VectorRecord(chunk=chunk, vector=vector, namespace=project.namespace)
            for chunk, vector in zip(chunks, vectors)
        ]

    # =========================================================================
    # Persisting
    # =========================================================================

    def _flush(self, run: SyncRun) -> None:
        batch = run.accumulator.drain()
        if batch:
            self._write_batch(run, batch)

    def _write_batch(self, run: SyncRun, batch: list[FileVectors]) -> None:
        """Upsert one batch, then advance or fail the checkpoint of every file in it."""
        records = [vector for group in batch for vector in group.vectors]

        if records:
            try:
                written = self.index.upsert(records)
            except Exception as e:
                run.log.error(f"Index write failed for batch of {len(batch)} files: {e}")
                for group in batch:
                    run.stats.warn(
                        f"Index write failed for {group.record.repository}/{group.record.path}: {e}"
                    )
                    self._mark_failed(run, group.record, group.previous, str(e))
                run.stats.add(files_failed=len(batch))
                return

            run.stats.add(vectors_upserted=written)
            run.log.debug(f"Upserted {written} vectors for {len(batch)} files")
            self._heartbeat(run)

        for group in batch:
            self._advance(run, group)

    def _advance(self, run: SyncRun, group: FileVectors) -> None:
        record = group.record
        new_count = len(group.vectors)
        old_count = group.previous.chunk_count if group.previous else 0
        recorded_count = new_count

        if old_count > new_count:
            stale = chunk_ids(record.repository, record.path, new_count, old_count)
            try:
                self.index.delete(stale, run.project.namespace)
                run.stats.add(vectors_deleted=len(stale))
                run.log.debug(f"Deleted {len(stale)} stale chunks of {record.path}")
            except Exception as e:
                message = f"Failed to delete {len(stale)} stale chunks of {record.repository}/{record.path}: {e}"
                run.log.warning(message)
                run.stats.warn(message)
                recorded_count = old_count

        self._save(run, CheckpointEntry(
            project_id=run.project_id,
            repository=record.repository,
            path=record.path,
            revision=record.revision,
            chunk_count=recorded_count,
            status=CheckpointStatus.SYNCED,
            last_synced_at=datetime.now(timezone.utc),
        ))

    def _mark_failed(
        self,
        run: SyncRun,
        record: ChangeRecord,
        previous: Optional[CheckpointEntry],
        error: str,
    ) -> None:
        """Record a failure without advancing the file's revision or chunk count."""
        self._save(run, CheckpointEntry(
            project_id=run.project_id,
            repository=record.repository,
            path=record.path,
            revision=previous.revision if previous else "",
            chunk_count=previous.chunk_count if previous else 0,
            status=CheckpointStatus.FAILED,
            last_synced_at=previous.last_synced_at if previous else None,
            error=error,
        ))

    def _defer(self, run: SyncRun, record: ChangeRecord) -> None:
        """Leave a file for the next run after a cancel or abort."""
        reason = CANCELED if run.cancel.is_canceled else "aborted"
        if reason == CANCELED:
            run.interrupted = True
        try:
            previous = self.checkpoints.get(run.project_id, record.repository, record.path)
        except Exception as e:
            run.stats.warn(f"Failed to read checkpoint for {record.repository}/{record.path}: {e}")
            return
        if previous is None and record.kind == ChangeKind.REMOVED:
            return
        self._mark_failed(run, record, previous, reason)

    def _save(self, run: SyncRun, entry: CheckpointEntry) -> None:
        try:
            self.checkpoints.save(entry)
        except Exception as e:
            message = f"Failed to save checkpoint for {entry.repository}/{entry.path}: {e}"
            run.log.error(message)
            run.stats.warn(message)

    # =========================================================================
    # Deletion Path
    # =========================================================================

    def _delete_file(self, run: SyncRun, record: ChangeRecord) -> None:
        """Remove every chunk a deleted file left in the index, then its checkpoint."""
        try:
            entry = self.checkpoints.get(run.project_id, record.repository, record.path)
        except Exception as e:
            message = f"Failed to read checkpoint for removed {record.repository}/{record.path}: {e}"
            run.log.warning(message)
            run.stats.warn(message)
            return

        if entry is None:
            run.log.debug(f"No checkpoint for removed {record.path}, nothing to delete")
            return

        ids = chunk_ids(record.repository, record.path, 0, entry.chunk_count)
        try:
            if ids:
                self.index.delete(ids, run.project.namespace)
        except Exception as e:
            message = f"Failed to delete chunks of removed {record.repository}/{record.path}: {e}"
            run.log.warning(message)
            run.stats.warn(message)
            # Keep the checkpoint, flagged so the delete is retried
            self._mark_failed(run, record, entry, str(e))
            return

        try:
            self.checkpoints.delete(run.project_id, record.repository, record.path)
        except Exception as e:
            message = f"Failed to delete checkpoint for {record.repository}/{record.path}: {e}"
            run.log.warning(message)
            run.stats.warn(message)
            return

        run.stats.add(files_deleted=1, vectors_deleted=len(ids))
        run.log.debug(f"Deleted {len(ids)} chunks of removed {record.path}")

    # =========================================================================
    # Reporting
    # =========================================================================

    def _report(self, run: SyncRun, result: RunResult) -> None:
        payload = build_notification(result)
        run.log.info(
            f"Sync {result.classification.value} for {result.project_id}: "
            f"{result.files_processed} files processed, "
            f"{result.vectors_upserted} vectors upserted, "
            f"{result.vectors_deleted} vectors deleted, "
            f"{len(result.warnings)} warnings, "
            f"duration: {result.duration_seconds:.2f}s"
        )

        try:
            self.notifier.notify(payload)
        except Exception as e:
            run.log.error(f"Notification failed: {e}")

        if run.phase == RunPhase.REPORTING:
            run.transition(RunPhase.DONE)


def build_notification(result: RunResult) -> NotificationPayload:
    """Turn a finished result into the notifier's payload."""
    classification = result.classification
    if classification == Classification.ERROR:
        title = "RepoSync Failed"
        message = result.errors[0]
    else:
        title = "RepoSync Update"
        message = (
            f"Processed {result.files_processed} files, generated "
            f"{result.embeddings_generated} embeddings in {result.duration_seconds:.1f}s"
        )
    return NotificationPayload(
        classification=classification,
        title=title,
        message=message,
        result=result,
    )
