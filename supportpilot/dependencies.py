"""
FastAPI dependencies.
Services are built once in the app lifespan and read back from `app.state`.
"""
from typing import Optional

from fastapi import Header, Request

from .errors import ApiError
from .logging_config import logger
from .retrieval import RetrievalEngine
from .services.chat_service import ChatService
from .services.document_service import DocumentStore
from .services.ingestion_service import IngestionService
from .services.organization_service import OrganizationStore


def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion_service


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def get_document_store(request: Request) -> DocumentStore:
    return request.app.state.document_store


def get_organization_store(request: Request) -> OrganizationStore:
    return request.app.state.organization_store


def get_retrieval_engine(request: Request) -> RetrievalEngine:
    return request.app.state.retrieval_engine


async def require_org_member(
    request: Request,
    x_user_id: Optional[str] = Header(default=None),
) -> str:
    """
    Resolve the caller's organization from the gateway-supplied user id.

    Returns:
        The organization id the authenticated user belongs to

    Raises:
        ApiError: UNAUTHORIZED, ORG_LOOKUP_FAILED or ORG_REQUIRED
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise ApiError(401, "UNAUTHORIZED", "Unauthorized")

    organizations = get_organization_store(request)
    try:
        org_id = await organizations.get_member_org_id(user_id)
    except Exception as e:
        logger.error("Organization lookup failed", user_id=user_id, exc_info=e)
        raise ApiError(500, "ORG_LOOKUP_FAILED", "Failed to load organization") from e

    if not org_id:
        raise ApiError(403, "ORG_REQUIRED", "Organization membership required")
    return org_id
