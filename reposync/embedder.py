"""
Vectorizers.

- SentenceTransformerVectorizer: local model via sentence-transformers.
  Defaults to nomic-ai/nomic-embed-text-v1.5 (768-dimensional, cosine
  normalised), loaded on first use.
- AzureOpenAIVectorizer: Azure OpenAI embeddings deployment
  (text-embedding-ada-002 is 1536-dimensional).

Both fail a whole batch at once and raise EmbeddingError.
"""

from __future__ import annotations

import threading
from typing import Optional, Sequence

from loguru import logger

from .utils import EmbeddingError, retry

DEFAULT_MODEL = "nomic-ai/nomic-embed-text-v1.5"


class SentenceTransformerVectorizer:
    """Local embedding model. Thread-safe; the model is shared by workers."""

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        document_prefix: Optional[str] = None,
        device: Optional[str] = None,
    ):
        self.model_name = model_name
        # nomic models work best with a task prefix
        if document_prefix is None:
            document_prefix = "search_document: " if "nomic" in model_name else ""
        self.document_prefix = document_prefix
        self.device = device
        self._model = None
        self._lock = threading.Lock()

    def _get_model(self):
        with self._lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer
                logger.info(f"Loading embedding model: {self.model_name}")
                self._model = SentenceTransformer(
                    self.model_name,
                    device=self.device,
                    trust_remote_code=True,  # required by nomic models
                )
                logger.info("Embedding model loaded.")
            return self._model

    @property
    def dimension(self) -> int:
        return int(self._get_model().get_sentence_embedding_dimension())

    def vectorize(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []

        model = self._get_model()
        prefixed = [f"{self.document_prefix}{t}" for t in texts]
        try:
            embeddings = model.encode(prefixed, normalize_embeddings=True, show_progress_bar=False)
        except Exception as e:
            raise EmbeddingError(f"Local embedding failed: {e}") from e
        return embeddings.tolist()


class AzureOpenAIVectorizer:
    """Embeddings from an Azure OpenAI deployment."""

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        deployment: str,
        api_version: str = "2024-02-01",
        dimension: int = 1536,
        client=None,
    ):
        """
        Initialize the Azure OpenAI client.

        Args:
            endpoint: Resource endpoint, e.g. https://myres.openai.azure.com.
            api_key: Resource API key.
            deployment: Embeddings deployment name.
            api_version: Azure OpenAI API version.
            dimension: Vector size produced by the deployment's model.
            client: Pre-built client, used by tests.
        """
        if client is None:
            from openai import AzureOpenAI
            client = AzureOpenAI(
                azure_endpoint=endpoint,
                api_key=api_key,
                api_version=api_version,
            )
        self._client = client
        self.deployment = deployment
        self._dimension = dimension
        logger.info(f"Using Azure OpenAI embeddings deployment {deployment}")

    @property
    def dimension(self) -> int:
        return self._dimension

    def vectorize(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            return self._embed(list(texts))
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Azure OpenAI embedding failed: {e}") from e

    @retry(max_attempts=3, base_delay=1.0, max_delay=30.0)
    def _embed(self, texts: list[str]) -> list[list[float]]:
        response = self._client.embeddings.create(model=self.deployment, input=texts)
        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(texts):
            raise EmbeddingError(f"Azure OpenAI returned {len(data)} embeddings for {len(texts)} texts")
        return [list(item.embedding) for item in data]
