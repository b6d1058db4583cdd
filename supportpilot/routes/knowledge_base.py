"""
Knowledge-base management routes.
Handles retrieval testing and document deletion for the dashboard.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..dependencies import get_document_store, get_retrieval_engine, require_org_member
from ..errors import ApiError
from ..logging_config import logger
from ..retrieval import RetrievalEngine, RetrievalError
from ..schemas import ChunkMatch, KnowledgeBaseTestRequest, KnowledgeBaseTestResult
from ..services.document_service import DocumentStore
from ..services.organization_service import is_uuid

router = APIRouter(prefix="/api/knowledge-base", tags=["knowledge-base"])


@router.post("/test")
async def test_knowledge_base(
    payload: KnowledgeBaseTestRequest,
    org_id: str = Depends(require_org_member),
    retriever: RetrievalEngine = Depends(get_retrieval_engine),
):
    """Run the chat retrieval step for a sample question and return the raw matches."""
    question = payload.question.strip()
    try:
        matches = await retriever.search_similar(
            org_id,
            question,
            match_threshold=payload.threshold,
            match_count=payload.limit,
        )
    except RetrievalError as e:
        logger.error("Knowledge base test search failed", org_id=org_id, error=str(e))
        raise ApiError(500, "SEARCH_FAILED", "Failed to search knowledge base") from e

    result = KnowledgeBaseTestResult(
        question=question,
        matches=[
            ChunkMatch(id=chunk.id, content=chunk.content, metadata=chunk.metadata, similarity=chunk.similarity)
            for chunk in matches
        ],
    )
    return JSONResponse({"data": result.model_dump()})


@router.delete("/documents/{document_id}")
async def delete_document(
    document_id: str,
    org_id: str = Depends(require_org_member),
    documents: DocumentStore = Depends(get_document_store),
):
    """Delete a document; its chunks go with it through the foreign-key cascade."""
    if not is_uuid(document_id):
        raise ApiError(400, "VALIDATION_ERROR", "Invalid document id")

    try:
        deleted = await documents.delete_document(document_id, org_id)
    except Exception as e:
        logger.error("Failed to delete document", document_id=document_id, exc_info=e)
        raise ApiError(500, "DOCUMENT_DELETE_FAILED", "Failed to delete document") from e

    if not deleted:
        raise ApiError(404, "DOCUMENT_NOT_FOUND", "Document not found")

    logger.info("Document deleted", document_id=document_id, org_id=org_id)
    return JSONResponse({"data": {"id": document_id}})
