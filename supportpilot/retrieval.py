from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Dict, List

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncEngine

from .embedding import EmbeddingGenerator
from .logging_config import logger
from .models import DocumentChunk

document_chunks = DocumentChunk.__table__

DEFAULT_MATCH_THRESHOLD = 0.7
DEFAULT_MATCH_COUNT = 5


class RetrievalError(Exception):
    """Embedding the query or running the similarity search failed."""


@dataclass
class RetrievedChunk:
    id: str
    content: str
    similarity: float
    metadata: Dict[str, Any] = field(default_factory=dict)


def build_retrieved_context(chunks: List[RetrievedChunk]) -> str:
    """Format chunks as a prompt-ready context block."""
    return "\n\n".join(
        f"Chunk {i} (similarity: {chunk.similarity:.3f}):\n{chunk.content}"
        for i, chunk in enumerate(chunks, start=1)
    )


def build_similarity_query(org_id: str, query_vector: List[float], match_threshold: float, match_count: int) -> Select:
    """Org-scoped chunks at or above the similarity threshold, closest first."""
    distance = document_chunks.c.embedding.cosine_distance(query_vector)
    similarity = (1 - distance).label("similarity")
    return (
        select(
            document_chunks.c.id,
            document_chunks.c.content,
            document_chunks.c.metadata,
            similarity,
        )
        .where(document_chunks.c.org_id == org_id)
        .where(1 - distance >= match_threshold)
        .order_by(distance)
        .limit(match_count)
    )


class RetrievalEngine:
    def __init__(self, engine: AsyncEngine, embedder: EmbeddingGenerator):
        self.engine = engine
        self.embedder = embedder

    async def search_similar(
        self,
        org_id: str,
        query: str,
        match_threshold: float = DEFAULT_MATCH_THRESHOLD,
        match_count: int = DEFAULT_MATCH_COUNT,
    ) -> List[RetrievedChunk]:
        """
        Search an organization's chunks by cosine similarity.

        Parameters:
        org_id (str): Organization whose knowledge base is searched.
        query (str): The query string to search for.
        match_threshold (float): Minimum similarity to keep a chunk.
        match_count (int): The number of top similar chunks to return.

        Returns:
        List[RetrievedChunk]: Best matches first.

        Raises:
        RetrievalError: If embedding or the vector query fails.
        """
        try:
            qv = await self.embedder.generate_embedding(query)
        except Exception as e:
            raise RetrievalError(f"Query embedding failed: {e}") from e
        if not qv:
            raise RetrievalError("Query embedding is empty")

        stmt = build_similarity_query(org_id, qv, match_threshold, match_count)

        t = perf_counter()
        try:
            async with self.engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        except Exception as e:
            raise RetrievalError(f"Similarity search failed: {e}") from e

        logger.info(
            "Search for similar chunks",
            org_id=org_id,
            match_count=len(rows),
            elapsed_ms=round((perf_counter() - t) * 1000, 2),
        )
        return [
            RetrievedChunk(
                id=str(row.id),
                content=row.content,
                similarity=float(row.similarity),
                metadata=row._mapping["metadata"] or {},
            )
            for row in rows
        ]
