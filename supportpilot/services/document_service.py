"""
Document service.
Handles knowledge-base document rows and their vector chunks.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from ..logging_config import logger
from ..models import Document, DocumentChunk

documents = Document.__table__
document_chunks = DocumentChunk.__table__

_DOCUMENT_COLUMNS = (
    documents.c.id,
    documents.c.title,
    documents.c.status,
    documents.c.source_type,
    documents.c.chunk_count,
    documents.c.metadata,
    documents.c.created_at,
    documents.c.updated_at,
)


def _serialize_document(row) -> Dict[str, Any]:
    doc = dict(row._mapping)
    doc["id"] = str(doc["id"])
    doc["metadata"] = doc.get("metadata") or {}
    for key in ("created_at", "updated_at"):
        if doc.get(key) is not None:
            doc[key] = doc[key].isoformat()
    return doc


class DocumentStore:
    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def create_document(
        self,
        org_id: str,
        title: str,
        source_type: str,
        metadata: Dict[str, Any],
        document_id: Optional[str] = None,
    ) -> str:
        """
        Insert a document row in `processing` status.

        Args:
            org_id: Owning organization
            title: Display title
            source_type: One of pdf, docx, csv, url, text, faq
            metadata: Initial metadata, including the queued ingestion snapshot
            document_id: Caller-supplied UUID; generated when omitted

        Returns:
            The document id
        """
        values = {
            "org_id": org_id,
            "title": title,
            "source_type": source_type,
            "status": "processing",
            "metadata": metadata,
        }
        if document_id:
            values["id"] = document_id

        async with self.engine.begin() as conn:
            result = await conn.execute(insert(documents).values(**values).returning(documents.c.id))
            new_id = str(result.scalar_one())

        logger.info("Created document", document_id=new_id, org_id=org_id, source_type=source_type)
        return new_id

    async def get_document(self, document_id: str, org_id: str) -> Optional[Dict[str, Any]]:
        async with self.engine.connect() as conn:
            row = (
                await conn.execute(
                    select(*_DOCUMENT_COLUMNS)
                    .where(documents.c.id == document_id)
                    .where(documents.c.org_id == org_id)
                )
            ).first()
        return _serialize_document(row) if row else None

    async def update_document(
        self,
        document_id: str,
        org_id: str,
        metadata: Dict[str, Any],
        status: Optional[str] = None,
        content: Optional[str] = None,
        chunk_count: Optional[int] = None,
    ) -> None:
        values: Dict[str, Any] = {"metadata": metadata, "updated_at": func.now()}
        if status is not None:
            values["status"] = status
        if content is not None:
            values["content"] = content
        if chunk_count is not None:
            values["chunk_count"] = chunk_count

        async with self.engine.begin() as conn:
            await conn.execute(
                update(documents)
                .where(documents.c.id == document_id)
                .where(documents.c.org_id == org_id)
                .values(**values)
            )

    async def delete_document(self, document_id: str, org_id: str) -> bool:
        """Delete a document; its chunks go with it through the FK cascade."""
        async with self.engine.begin() as conn:
            result = await conn.execute(
                delete(documents)
                .where(documents.c.id == document_id)
                .where(documents.c.org_id == org_id)
            )
        deleted = result.rowcount > 0
        if deleted:
            logger.info("Deleted document", document_id=document_id, org_id=org_id)
        return deleted


class ChunkStore:
    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def insert_chunks(self, rows: List[Dict[str, Any]]) -> int:
        """
        Bulk insert chunk rows in a single statement.

        Each row carries document_id, org_id, content, token_count, embedding
        and metadata.
        """
        if not rows:
            return 0

        values = [
            {
                "document_id": row["document_id"],
                "org_id": row["org_id"],
                "content": row["content"],
                "token_count": row["token_count"],
                "embedding": row["embedding"],
                "metadata": row.get("metadata") or {},
            }
            for row in rows
        ]
        async with self.engine.begin() as conn:
            await conn.execute(insert(document_chunks), values)

        logger.debug("Stored chunks", document_id=rows[0]["document_id"], count=len(values))
        return len(values)
