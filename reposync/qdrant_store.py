"""
Qdrant index writer.

One collection per project namespace (e.g. reposync_docs). Each point is one
chunk; the point id is the chunk id rendered as a UUID, so re-upserting an
edited file overwrites its previous points in place.

Features:
- Collection management (create on first write, delete, info)
- All-or-nothing batch upsert
- Point deletion by chunk id
- Payload indexing for fast filtering
"""

from __future__ import annotations

import threading
import uuid
from typing import Optional, Sequence

from loguru import logger
from qdrant_client import QdrantClient
from qdrant_client.http import models
from qdrant_client.http.models import (
    Distance,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from .models import VectorRecord
from .utils import IndexWriteError


INDEXED_FIELDS = ("repository", "file_path", "commit_sha", "file_ext")


def point_id(chunk_id: str) -> str:
    """Qdrant point id for a chunk id (MD5 hex → UUID string)."""
    return str(uuid.UUID(hex=chunk_id))


class QdrantIndexWriter:
    """
    Qdrant-backed index writer.

    Collections are created lazily on first upsert with the configured
    vector size.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6333,
        api_key: Optional[str] = None,
        vector_size: int = 384,
        distance: str = "COSINE",
        client: Optional[QdrantClient] = None,
    ):
        """
        Initialize Qdrant client.

        Args:
            host: Qdrant host.
            port: REST API port.
            api_key: Optional API key for Qdrant Cloud.
            vector_size: Size of embedding vectors.
            distance: Distance metric (COSINE, DOT, EUCLID).
            client: Pre-built client, used by tests.
        """
        self.host = host
        self.port = port
        self.vector_size = vector_size
        self.distance = self._parse_distance(distance)

        self._client = client or QdrantClient(host=host, port=port, api_key=api_key)
        self._known_collections: set[str] = set()
        self._lock = threading.Lock()

        logger.info(f"Connected to Qdrant at {host}:{port}")

    def close(self) -> None:
        """Close the Qdrant client."""
        self._client.close()

    def __enter__(self) -> "QdrantIndexWriter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================================================================
    # Collection Management
    # =========================================================================

    def ensure_collection(self, collection_name: str) -> None:
        """
        Ensure collection exists, create if not.

        Raises:
            IndexWriteError: If the collection cannot be checked or created.
        """
        with self._lock:
            if collection_name in self._known_collections:
                return
            try:
                if not self._client.collection_exists(collection_name):
                    self._client.create_collection(
                        collection_name=collection_name,
                        vectors_config=VectorParams(
                            size=self.vector_size,
                            distance=self.distance,
                        ),
                    )
                    logger.info(f"Created collection: {collection_name}")
                    self._create_payload_indexes(collection_name)
            except Exception as e:
                raise IndexWriteError(
                    f"Error ensuring collection {collection_name}: {e}",
                    operation="ensure_collection",
                ) from e
            self._known_collections.add(collection_name)

    def _create_payload_indexes(self, collection_name: str) -> None:
        """Create payload indexes for efficient filtering."""
        for field_name in INDEXED_FIELDS:
            try:
                self._client.create_payload_index(
                    collection_name=collection_name,
                    field_name=field_name,
                    field_schema=PayloadSchemaType.KEYWORD,
                )
            except Exception as e:
                logger.debug(f"Index may already exist for {field_name}: {e}")

    # =========================================================================
    # Index Writer
    # =========================================================================

    def upsert(self, records: Sequence[VectorRecord]) -> int:
        """
        Upsert one batch of records sharing a namespace.

        Returns:
            Number of points written.

        Raises:
            IndexWriteError: If the batch was not fully written.
        """
        if not records:
            return 0

        namespaces = {record.namespace for record in records}
        if len(namespaces) != 1:
            raise IndexWriteError(
                f"Batch spans {len(namespaces)} namespaces", operation="upsert"
            )
        collection_name = namespaces.pop()
        self.ensure_collection(collection_name)

        point_structs = [
            PointStruct(
                id=point_id(record.id),
                vector=record.vector,
                payload=record.payload(),
            )
            for record in records
        ]

        try:
            result = self._client.upsert(
                collection_name=collection_name,
                points=point_structs,
                wait=True,
            )
        except Exception as e:
            raise IndexWriteError(f"Error upserting batch: {e}", operation="upsert") from e

        if result.status != models.UpdateStatus.COMPLETED:
            raise IndexWriteError(
                f"Upsert completed with status: {result.status}", operation="upsert"
            )

        logger.debug(f"Upserted {len(point_structs)} points into {collection_name}")
        return len(point_structs)

    def delete(self, ids: Sequence[str], namespace: str) -> None:
        """
        Delete points by chunk id. Missing ids are ignored.

        Raises:
            IndexWriteError: If the delete request fails.
        """
        if not ids:
            return

        try:
            if not self._client.collection_exists(namespace):
                logger.debug(f"Collection {namespace} does not exist, nothing to delete")
                return
            result = self._client.delete(
                collection_name=namespace,
                points_selector=models.PointIdsList(points=[point_id(i) for i in ids]),
                wait=True,
            )
        except Exception as e:
            raise IndexWriteError(f"Error deleting points: {e}", operation="delete") from e

        if result.status != models.UpdateStatus.COMPLETED:
            raise IndexWriteError(
                f"Delete completed with status: {result.status}", operation="delete"
            )

    # =========================================================================
    # Utilities
    # =========================================================================

    def _parse_distance(self, distance: str) -> Distance:
        """Parse distance string to Qdrant Distance enum."""
        distance_map = {
            "COSINE": Distance.COSINE,
            "DOT": Distance.DOT,
            "EUCLID": Distance.EUCLID,
            "EUCLIDEAN": Distance.EUCLID,
        }
        return distance_map.get(distance.upper(), Distance.COSINE)
