"""
Embedding generation.
OpenAI embeddings by default; a local sentence-transformers model when
EMBED_PROVIDER=local.
"""
import asyncio
from typing import Awaitable, Callable, List, Optional, Protocol

import numpy as np
from openai import AsyncOpenAI

from .cancellation import IngestionCancelledError
from .config import Settings
from .logging_config import logger

MAX_BATCH_SIZE = 100

StopPredicate = Callable[[], Awaitable[bool]]


class EmbeddingBackend(Protocol):
    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...


class OpenAIEmbeddingBackend:
    def __init__(self, client: AsyncOpenAI, model: str = "text-embedding-3-small"):
        self.client = client
        self.model = model

    async def embed(self, texts: List[str]) -> List[List[float]]:
        response = await self.client.embeddings.create(model=self.model, input=texts)
        return [item.embedding for item in response.data]


class LocalEmbeddingBackend:
    """sentence-transformers model, loaded once and run in a worker thread."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None

    def preload(self):
        """Load the model ahead of the first request."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            logger.info("Loading embedding model", model=self.model_name)

            # Explicit tokenizer settings avoid a FutureWarning
            self._model = SentenceTransformer(
                self.model_name,
                tokenizer_kwargs={"clean_up_tokenization_spaces": False},
            )

            # Warm up with a test embedding
            self._model.encode(["test"], normalize_embeddings=True, show_progress_bar=False)
            logger.info("Embedding model loaded", model=self.model_name)
        return self._model

    def _encode(self, texts: List[str]) -> List[List[float]]:
        model = self.preload()
        vecs = model.encode(texts, normalize_embeddings=True, show_progress_bar=False)
        if isinstance(vecs, np.ndarray):
            return vecs.tolist()
        return [list(v) for v in vecs]

    async def embed(self, texts: List[str]) -> List[List[float]]:
        return await asyncio.to_thread(self._encode, texts)


class EmbeddingGenerator:
    """Ordered embeddings for chunk texts and queries, in provider-safe batches."""

    def __init__(self, backend: Optional[EmbeddingBackend], batch_size: int = MAX_BATCH_SIZE):
        self.backend = backend
        self.batch_size = batch_size

    async def _embed(self, texts: List[str]) -> List[List[float]]:
        if self.backend is None:
            raise RuntimeError("Embedding provider is not configured")
        return await self.backend.embed(texts)

    async def generate_embedding(self, text: str) -> List[float]:
        """Embed one text; an empty provider response yields an empty vector."""
        vectors = await self._embed([text])
        return list(vectors[0]) if vectors else []

    async def generate_embeddings_batch(
        self,
        texts: List[str],
        should_stop: Optional[StopPredicate] = None,
    ) -> List[List[float]]:
        """
        Embed texts in batches of at most `batch_size`, preserving order.

        Args:
            texts: Texts to embed
            should_stop: Checked before every batch

        Returns:
            Vectors in input order; the count is whatever the provider returned

        Raises:
            IngestionCancelledError: If `should_stop` reports cancellation
        """
        if not texts:
            return []

        vectors: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            if should_stop is not None and await should_stop():
                raise IngestionCancelledError()

            batch = texts[start:start + self.batch_size]
            vectors.extend(await self._embed(batch))
            logger.debug("Embedded batch", start=start, size=len(batch))

        return vectors


def build_embedding_backend(settings: Settings, openai_client: Optional[AsyncOpenAI]) -> Optional[EmbeddingBackend]:
    """None when the OpenAI provider is selected but no API key is configured."""
    if settings.embed_provider == "local":
        return LocalEmbeddingBackend(settings.embed_model)
    if openai_client is None:
        logger.warning("EMBED_PROVIDER=openai requires OPENAI_API_KEY; embeddings are unavailable")
        return None
    return OpenAIEmbeddingBackend(openai_client, settings.embed_model)
