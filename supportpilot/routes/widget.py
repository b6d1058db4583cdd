"""
Public widget configuration routes.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Response
from fastapi.responses import JSONResponse

from ..dependencies import get_chat_service
from ..errors import ApiError
from ..logging_config import logger
from ..services.chat_service import ChatService
from ..widget import build_cors_headers, is_origin_allowed

router = APIRouter(prefix="/api", tags=["widget"])

WIDGET_CACHE_CONTROL = "public, max-age=60"


@router.options("/widget/{org_id}")
async def widget_preflight(org_id: str, origin: Optional[str] = Header(None)):
    if not origin:
        return Response(status_code=204)
    return Response(status_code=204, headers=build_cors_headers(origin, True))


@router.get("/widget/{org_id}")
async def get_widget_config(
    org_id: str,
    origin: Optional[str] = Header(None),
    service: ChatService = Depends(get_chat_service),
):
    """Public widget configuration used by the embed script."""
    try:
        _, widget = await service.resolve_widget(org_id, origin)
    except ApiError:
        raise
    except Exception as e:
        logger.error("Widget config lookup failed", org_id=org_id, exc_info=e)
        raise ApiError(503, "BACKEND_UNAVAILABLE", "Backend service unavailable") from e

    if not widget.is_active:
        raise ApiError(403, "WIDGET_INACTIVE", "Widget is inactive")

    if origin and not is_origin_allowed(origin, widget.allowed_domains):
        raise ApiError(403, "DOMAIN_NOT_ALLOWED", "Origin is not allowed", build_cors_headers(origin, False))

    return JSONResponse(
        {"data": widget.to_public().model_dump()},
        headers={**build_cors_headers(origin, True), "Cache-Control": WIDGET_CACHE_CONTROL},
    )
