"""
Knowledge-base ingestion routes.
Handles document ingestion, progress lookup and cancellation.
"""
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse

from ..cancellation import IngestionCancelledError
from ..dependencies import get_ingestion_service, require_org_member
from ..errors import ApiError, error_response
from ..logging_config import logger
from ..schemas import SOURCE_TYPES
from ..services.ingestion_service import (
    DocumentCreateError,
    DocumentNotFoundError,
    IngestionAlreadyFinishedError,
    IngestionError,
    IngestionRequest,
    IngestionService,
    UploadedFile,
    parse_path_rules,
)
from ..services.organization_service import is_uuid

router = APIRouter(prefix="/api", tags=["ingest"])

MIN_TITLE_CHARS = 2
MAX_TITLE_CHARS = 200


def _validate_document_id(document_id: str) -> str:
    if not is_uuid(document_id):
        raise ApiError(400, "VALIDATION_ERROR", "Invalid document id")
    return document_id


@router.post("/ingest")
async def ingest_document(
    sourceType: Optional[str] = Form(None),
    title: Optional[str] = Form(None),
    documentId: Optional[str] = Form(None),
    url: Optional[str] = Form(None),
    allowed_paths: Optional[str] = Form(None),
    disallowed_paths: Optional[str] = Form(None),
    faq_question: Optional[str] = Form(None),
    faq_answer: Optional[str] = Form(None),
    text: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    org_id: str = Depends(require_org_member),
    service: IngestionService = Depends(get_ingestion_service),
):
    """
    Ingest one source into the caller's knowledge base.

    The request stays open until the pipeline finishes; progress can be polled
    meanwhile through GET /api/ingest/{id} using a client-supplied documentId.
    """
    source_type = (sourceType or "").strip()
    if source_type not in SOURCE_TYPES:
        raise ApiError(400, "VALIDATION_ERROR", f"sourceType must be one of: {', '.join(SOURCE_TYPES)}")

    clean_title = (title or "").strip()
    if len(clean_title) < MIN_TITLE_CHARS:
        raise ApiError(400, "VALIDATION_ERROR", "Title must be at least 2 characters")
    if len(clean_title) > MAX_TITLE_CHARS:
        raise ApiError(400, "VALIDATION_ERROR", "Title must be at most 200 characters")

    requested_id = (documentId or "").strip() or None
    if requested_id:
        _validate_document_id(requested_id)

    upload = None
    if file is not None:
        upload = UploadedFile(
            filename=file.filename or "upload",
            content_type=file.content_type or "",
            data=await file.read(),
        )

    request = IngestionRequest(
        source_type=source_type,
        title=clean_title,
        document_id=requested_id,
        url=url,
        allowed_paths=parse_path_rules(allowed_paths),
        disallowed_paths=parse_path_rules(disallowed_paths),
        faq_question=faq_question or "",
        faq_answer=faq_answer or "",
        text=text or "",
        file=upload,
    )

    try:
        result = await service.ingest(org_id, request)
    except DocumentCreateError as e:
        raise ApiError(500, "DOCUMENT_CREATE_FAILED", str(e)) from e
    except IngestionCancelledError as e:
        return error_response(409, "INGESTION_CANCELLED", str(e))
    except IngestionError as e:
        return error_response(400, "INGESTION_FAILED", str(e))

    return JSONResponse({"data": result.model_dump()})


@router.get("/ingest/{document_id}")
async def get_ingestion_status(
    document_id: str,
    org_id: str = Depends(require_org_member),
    service: IngestionService = Depends(get_ingestion_service),
):
    """Document row plus its ingestion progress snapshot."""
    _validate_document_id(document_id)
    try:
        document = await service.get_document(document_id, org_id)
    except DocumentNotFoundError:
        raise ApiError(404, "DOCUMENT_NOT_FOUND", "Document not found")
    return JSONResponse({"data": {"document": document}})


async def _cancel(document_id: str, org_id: str, service: IngestionService) -> JSONResponse:
    _validate_document_id(document_id)
    try:
        result = await service.request_cancellation(document_id, org_id)
    except DocumentNotFoundError:
        raise ApiError(404, "DOCUMENT_NOT_FOUND", "Document not found")
    except IngestionAlreadyFinishedError:
        raise ApiError(409, "INGESTION_ALREADY_FINISHED", "Ingestion is already finished")
    except Exception as e:
        logger.error("Failed to request cancellation", document_id=document_id, exc_info=e)
        raise ApiError(500, "CANCEL_FAILED", "Failed to cancel ingestion") from e
    return JSONResponse({"data": result})


@router.post("/ingest/{document_id}/cancel")
async def cancel_ingestion(
    document_id: str,
    org_id: str = Depends(require_org_member),
    service: IngestionService = Depends(get_ingestion_service),
):
    return await _cancel(document_id, org_id, service)


@router.post("/ingest/{document_id}")
async def cancel_ingestion_alias(
    document_id: str,
    org_id: str = Depends(require_org_member),
    service: IngestionService = Depends(get_ingestion_service),
):
    return await _cancel(document_id, org_id, service)
