"""
Public widget chat routes.
Handles the CORS preflight and the streamed chat turn.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Response
from fastapi.responses import StreamingResponse

from ..dependencies import get_chat_service
from ..schemas import ChatRequest
from ..services.chat_service import ChatService

router = APIRouter(prefix="/api", tags=["chat"])


@router.options("/chat")
async def chat_preflight(
    org_id: Optional[str] = Query(None),
    origin: Optional[str] = Header(None),
    service: ChatService = Depends(get_chat_service),
):
    if not origin:
        return Response(status_code=204)

    headers = await service.preflight(org_id, origin)
    return Response(status_code=204, headers=headers)


@router.post("/chat")
async def chat(
    payload: ChatRequest,
    org_id: Optional[str] = Query(None),
    origin: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None),
    service: ChatService = Depends(get_chat_service),
):
    """
    Answer one visitor message as a plain-text stream.

    Workflow:
    1. Check organization, widget activation, origin and quotas
    2. Resolve the conversation and store the user message
    3. Classify intent
    4. Rule-based reply (with escalation) or retrieval-grounded generation
    5. Store the assistant message once the reply is complete
    """
    turn = await service.handle_turn(payload, origin=origin, user_agent=user_agent, query_org_id=org_id)
    return StreamingResponse(
        turn.body,
        media_type="text/plain; charset=utf-8",
        headers={**turn.headers, "Cache-Control": "no-cache, no-transform"},
    )
