"""
Shared fixtures: in-memory collaborators for the sync engine plus a real
SQLite checkpoint store under tmp_path.
"""

import dataclasses
import hashlib
import threading
from typing import Callable, Optional

import pytest

from reposync.checkpoint import SQLiteCheckpointStore
from reposync.engine import EngineSettings, SyncEngine
from reposync.models import (
    ChangeKind,
    ChangeRecord,
    DiffStrategy,
    FileListing,
    Project,
    Repository,
)
from reposync.utils import EmbeddingError, IndexWriteError, NotificationError


def blob_sha(content: str) -> str:
    return hashlib.sha1(content.encode("utf-8")).hexdigest()


def text_of(length: int, fill: str = "x") -> str:
    """Text without sentence breaks, so chunk boundaries depend on length only."""
    return (fill * length)[:length]


class FakeDetector:
    """
    In-memory GitHub. Every ``commit`` creates a new head revision and keeps
    the snapshot so diffs between any two revisions can be computed.
    """

    def __init__(self):
        self.repositories: list[Repository] = []
        self._snapshots: dict[str, dict[str, dict[str, str]]] = {}
        self._heads: dict[str, str] = {}
        self._counter = 0
        self.fail_discovery: Optional[Exception] = None
        self.fail_diff: dict[str, Exception] = {}
        self.fail_fetch: dict[str, str] = {}
        self.diff_calls: list[tuple[str, Optional[str]]] = []
        self.fetched: list[str] = []
        self._lock = threading.Lock()

    def add_repository(self, full_name: str, files: dict[str, str]) -> str:
        owner, name = full_name.split("/")
        self.repositories.append(Repository(
            id=len(self.repositories) + 1,
            name=name,
            full_name=full_name,
            owner=owner,
        ))
        self._snapshots[full_name] = {}
        return self.commit(full_name, files)

    def commit(self, full_name: str, files: dict[str, str]) -> str:
        self._counter += 1
        revision = f"rev{self._counter:04d}"
        self._snapshots[full_name][revision] = dict(files)
        self._heads[full_name] = revision
        return revision

    def update(self, full_name: str, changes: dict[str, Optional[str]]) -> str:
        """Apply changes to the head snapshot; None content removes the path."""
        files = dict(self.current(full_name))
        for path, content in changes.items():
            if content is None:
                files.pop(path, None)
            else:
                files[path] = content
        return self.commit(full_name, files)

    def head(self, full_name: str) -> str:
        return self._heads[full_name]

    def current(self, full_name: str) -> dict[str, str]:
        return self._snapshots[full_name][self._heads[full_name]]

    # Change detector contract

    def list_repositories(self, organization: str, keyword: str = "") -> list[Repository]:
        if self.fail_discovery is not None:
            raise self.fail_discovery
        return [
            dataclasses.replace(r)
            for r in self.repositories
            if keyword.lower() in r.name.lower()
        ]

    def diff(
        self,
        repository: Repository,
        prior_revision: Optional[str],
        include: Optional[Callable[[str], bool]] = None,
    ) -> list[ChangeRecord]:
        name = repository.full_name
        self.diff_calls.append((name, prior_revision))
        if name in self.fail_diff:
            raise self.fail_diff[name]

        head = self._heads[name]
        repository.head_revision = head
        current = self.current(name)

        if prior_revision == head:
            return []

        before = self._snapshots[name][prior_revision] if prior_revision else {}
        records = []
        for path, content in current.items():
            if path not in before:
                kind = ChangeKind.ADDED
            elif before[path] != content:
                kind = ChangeKind.MODIFIED
            else:
                continue
            if include is not None and not include(path):
                records.append(ChangeRecord(repository=name, path=path, kind=kind, revision=head))
            else:
                records.append(self._fetched(name, path, content, kind))
        for path in before:
            if path not in current:
                records.append(ChangeRecord(
                    repository=name, path=path, kind=ChangeKind.REMOVED, revision=head,
                ))
        return records

    def list_files(self, repository: Repository) -> list[FileListing]:
        name = repository.full_name
        if name in self.fail_diff:
            raise self.fail_diff[name]
        repository.head_revision = self._heads[name]
        return [
            FileListing(path=path, revision=blob_sha(content), size=len(content))
            for path, content in self.current(name).items()
        ]

    def fetch_file(self, repository: Repository, path: str) -> Optional[ChangeRecord]:
        name = repository.full_name
        content = self.current(name).get(path)
        if content is None:
            return None
        return self._fetched(name, path, content, ChangeKind.MODIFIED)

    def _fetched(self, name: str, path: str, content: str, kind: ChangeKind) -> ChangeRecord:
        with self._lock:
            self.fetched.append(path)
        error = self.fail_fetch.get(path)
        if error:
            return ChangeRecord(
                repository=name, path=path, kind=kind, revision=self._heads[name], error=error,
            )
        return ChangeRecord(
            repository=name,
            path=path,
            kind=kind,
            content=content,
            revision=self._heads[name],
            size=len(content),
        )


class FakeVectorizer:
    """Four-dimensional vectors. Fails whole batches on demand."""

    dimension = 4

    def __init__(self):
        self.fail_all = False
        self.fail_on: set[str] = set()
        self.on_call: Optional[Callable[[list[str]], None]] = None
        self.calls = 0
        self._lock = threading.Lock()

    def vectorize(self, texts):
        with self._lock:
            self.calls += 1
        if self.on_call is not None:
            self.on_call(list(texts))
        if self.fail_all:
            raise EmbeddingError("embedding service unavailable")
        for text in texts:
            for marker in self.fail_on:
                if marker in text:
                    raise EmbeddingError(f"cannot embed text containing {marker}")
        return [[float(len(t)), 1.0, 0.0, 0.0] for t in texts]


class FakeIndex:
    """Namespaced point store recording every write."""

    def __init__(self):
        self.points: dict[str, dict[str, list[float]]] = {}
        self.upserts: list[list[str]] = []
        self.deletes: list[tuple[list[str], str]] = []
        self.fail_upsert = False
        self.fail_delete = False
        # Upserts of batches holding any of these paths fail
        self.fail_paths: set[str] = set()
        self._lock = threading.Lock()

    def upsert(self, records) -> int:
        if self.fail_upsert:
            raise IndexWriteError("qdrant unavailable", operation="upsert")
        if any(record.chunk.path in self.fail_paths for record in records):
            raise IndexWriteError("batch rejected", operation="upsert")
        with self._lock:
            for record in records:
                self.points.setdefault(record.namespace, {})[record.id] = record.vector
            self.upserts.append([record.id for record in records])
        return len(records)

    def delete(self, ids, namespace: str) -> None:
        if self.fail_delete:
            raise IndexWriteError("qdrant unavailable", operation="delete")
        with self._lock:
            self.deletes.append((list(ids), namespace))
            for point in ids:
                self.points.get(namespace, {}).pop(point, None)

    def ids(self, namespace: str) -> set[str]:
        return set(self.points.get(namespace, {}))


class FakeNotifier:
    def __init__(self):
        self.payloads = []
        self.fail = False

    def notify(self, payload) -> None:
        self.payloads.append(payload)
        if self.fail:
            raise NotificationError("slack is down")


class FakeCatalog:
    def __init__(self, projects: list[Project]):
        self.projects = projects

    def get_project(self, project_id: str) -> Optional[Project]:
        return next((p for p in self.projects if p.id == project_id), None)

    def get_enabled_projects(self) -> list[Project]:
        return [p for p in self.projects if p.enabled]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def project() -> Project:
    return Project(
        id="docs",
        name="Docs",
        organization="acme",
        allowed_extensions=(".md", ".txt"),
        exclude_patterns=("node_modules",),
    )


@pytest.fixture
def per_file_project() -> Project:
    return Project(
        id="handbook",
        name="Handbook",
        organization="acme",
        allowed_extensions=(".md", ".txt"),
        exclude_patterns=("node_modules",),
        diff_strategy=DiffStrategy.PER_FILE,
    )


@pytest.fixture
def catalog(project, per_file_project) -> FakeCatalog:
    return FakeCatalog([project, per_file_project])


@pytest.fixture
def store(tmp_path) -> SQLiteCheckpointStore:
    return SQLiteCheckpointStore(tmp_path / "metadata.db")


@pytest.fixture
def detector() -> FakeDetector:
    return FakeDetector()


@pytest.fixture
def vectorizer() -> FakeVectorizer:
    return FakeVectorizer()


@pytest.fixture
def index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def make_engine(catalog, detector, vectorizer, index, store, notifier):
    """Build an engine over the fakes; keyword arguments override settings."""
    from reposync.chunker import TextChunker

    def _make(locks=None, **overrides) -> SyncEngine:
        settings = dict(
            max_workers=2,
            max_chunk_size=100,
            chunk_overlap=10,
            embedding_batch_size=50,
            upsert_batch_size=100,
        )
        settings.update(overrides)
        return SyncEngine(
            catalog=catalog,
            detector=detector,
            chunker=TextChunker(),
            vectorizer=vectorizer,
            index=index,
            checkpoints=store,
            notifier=notifier,
            settings=EngineSettings(**settings),
            locks=locks,
        )

    return _make


@pytest.fixture
def engine(make_engine) -> SyncEngine:
    return make_engine()
