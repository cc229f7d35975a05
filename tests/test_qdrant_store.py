"""
Tests for the Qdrant index writer, using qdrant-client's in-memory mode.
"""

import uuid

import pytest
from qdrant_client import QdrantClient

from reposync.chunker import chunk_id
from reposync.models import Chunk, VectorRecord
from reposync.qdrant_store import QdrantIndexWriter, point_id
from reposync.utils import IndexWriteError


def _record(path, ordinal, namespace="reposync_docs", vector=None):
    cid = chunk_id("acme/docs", path, ordinal)
    chunk = Chunk(
        id=cid,
        repository="acme/docs",
        path=path,
        ordinal=ordinal,
        total=2,
        text=f"{path} part {ordinal}",
        metadata={"repository": "acme/docs", "file_path": path, "chunk_index": ordinal},
    )
    return VectorRecord(chunk=chunk, vector=vector or [0.1, 0.2, 0.3, 0.4], namespace=namespace)


@pytest.fixture
def qdrant():
    client = QdrantClient(":memory:")
    yield client
    client.close()


@pytest.fixture
def writer(qdrant):
    return QdrantIndexWriter(vector_size=4, client=qdrant)


class TestPointId:
    def test_md5_hex_becomes_uuid(self):
        cid = chunk_id("acme/docs", "a.md", 0)
        assert point_id(cid) == str(uuid.UUID(hex=cid))


class TestQdrantIndexWriter:
    def test_upsert_creates_collection_and_writes(self, writer, qdrant):
        written = writer.upsert([_record("a.md", 0), _record("a.md", 1)])

        assert written == 2
        assert qdrant.collection_exists("reposync_docs")
        assert qdrant.count("reposync_docs").count == 2

    def test_payload_carries_chunk_id_and_content(self, writer, qdrant):
        record = _record("a.md", 0)
        writer.upsert([record])

        (point,) = qdrant.retrieve("reposync_docs", ids=[point_id(record.id)], with_payload=True)

        assert point.payload["chunk_id"] == record.id
        assert point.payload["content"] == "a.md part 0"
        assert point.payload["file_path"] == "a.md"

    def test_upsert_overwrites_same_ids(self, writer, qdrant):
        writer.upsert([_record("a.md", 0)])
        writer.upsert([_record("a.md", 0, vector=[0.4, 0.3, 0.2, 0.1])])

        assert qdrant.count("reposync_docs").count == 1

    def test_upsert_rejects_mixed_namespaces(self, writer):
        with pytest.raises(IndexWriteError):
            writer.upsert([_record("a.md", 0), _record("b.md", 0, namespace="reposync_blog")])

    def test_upsert_empty_batch(self, writer):
        assert writer.upsert([]) == 0

    def test_delete_by_chunk_id(self, writer, qdrant):
        writer.upsert([_record("a.md", 0), _record("a.md", 1)])

        writer.delete([chunk_id("acme/docs", "a.md", 1), chunk_id("acme/docs", "zzz.md", 0)], "reposync_docs")

        assert qdrant.count("reposync_docs").count == 1

    def test_delete_from_missing_collection_is_noop(self, writer):
        writer.delete([chunk_id("acme/docs", "a.md", 0)], "reposync_nothing")
