"""
Conversation management service.
Handles conversations, messages and escalations for the widget chat.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from ..logging_config import logger
from ..models import Conversation, Escalation, Message
from ..schemas import EscalationPriority, StoredMessage

conversations = Conversation.__table__
messages = Message.__table__
escalations = Escalation.__table__

OPEN_ESCALATION_STATUSES = ("pending", "assigned")


class ConversationStore:
    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    # ==================== Conversations ====================

    async def find_conversation(self, conversation_id: str, org_id: str, visitor_id: str) -> Optional[str]:
        """Return the id if the conversation exists and belongs to this visitor."""
        async with self.engine.connect() as conn:
            found = (
                await conn.execute(
                    select(conversations.c.id)
                    .where(conversations.c.id == conversation_id)
                    .where(conversations.c.org_id == org_id)
                    .where(conversations.c.visitor_id == visitor_id)
                )
            ).scalar_one_or_none()
        return str(found) if found else None

    async def find_active_conversation(self, org_id: str, visitor_id: str) -> Optional[str]:
        """Most recently created active conversation for the visitor."""
        async with self.engine.connect() as conn:
            found = (
                await conn.execute(
                    select(conversations.c.id)
                    .where(conversations.c.org_id == org_id)
                    .where(conversations.c.visitor_id == visitor_id)
                    .where(conversations.c.status == "active")
                    .order_by(conversations.c.created_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
        return str(found) if found else None

    async def create_conversation(self, org_id: str, visitor_id: str, metadata: Dict[str, Any]) -> str:
        """
        Create a new active conversation.

        Returns:
            str: The ID of the newly created conversation
        """
        async with self.engine.begin() as conn:
            result = await conn.execute(
                insert(conversations)
                .values(org_id=org_id, visitor_id=visitor_id, status="active", metadata=metadata)
                .returning(conversations.c.id)
            )
            conversation_id = str(result.scalar_one())
        logger.info("Created new conversation", conversation_id=conversation_id, org_id=org_id)
        return conversation_id

    async def set_conversation_status(self, conversation_id: str, org_id: str, status: str) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(
                update(conversations)
                .where(conversations.c.id == conversation_id)
                .where(conversations.c.org_id == org_id)
                .values(status=status)
            )

    # ==================== Messages ====================

    async def store_message(
        self,
        conversation_id: str,
        org_id: str,
        role: str,
        content: str,
        model: Optional[str] = None,
        tokens_used: Optional[int] = None,
        sources: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        """
        Store a message in the conversation.

        Args:
            conversation_id: The conversation ID
            org_id: Owning organization
            role: "user", "assistant", "system" or "human_agent"
            content: The message content
            model: Model tag (e.g., "visitor", "rule-based", "gpt-4o-mini")
            tokens_used: Optional total token usage reported by the provider
            sources: Optional list of {id, similarity} chunk references

        Returns:
            The message id
        """
        async with self.engine.begin() as conn:
            result = await conn.execute(
                insert(messages)
                .values(
                    conversation_id=conversation_id,
                    org_id=org_id,
                    role=role,
                    content=content,
                    model=model,
                    tokens_used=tokens_used,
                    sources=sources,
                )
                .returning(messages.c.id)
            )
            message_id = str(result.scalar_one())
        logger.debug("Stored message", conversation_id=conversation_id, role=role)
        return message_id

    async def get_recent_messages(self, conversation_id: str, org_id: str, limit: int = 10) -> List[StoredMessage]:
        """Last `limit` messages, oldest first."""
        async with self.engine.connect() as conn:
            rows = (
                await conn.execute(
                    select(messages.c.role, messages.c.content)
                    .where(messages.c.conversation_id == conversation_id)
                    .where(messages.c.org_id == org_id)
                    .order_by(messages.c.created_at.desc())
                    .limit(limit)
                )
            ).all()
        return [StoredMessage(role=row.role, content=row.content) for row in reversed(rows)]

    async def count_user_messages_since(self, org_id: str, since: datetime) -> int:
        async with self.engine.connect() as conn:
            count = (
                await conn.execute(
                    select(func.count(messages.c.id))
                    .where(messages.c.org_id == org_id)
                    .where(messages.c.role == "user")
                    .where(messages.c.created_at >= since)
                )
            ).scalar_one()
        return int(count or 0)

    # ==================== Escalations ====================

    async def find_open_escalation(self, conversation_id: str, org_id: str) -> Optional[str]:
        async with self.engine.connect() as conn:
            found = (
                await conn.execute(
                    select(escalations.c.id)
                    .where(escalations.c.org_id == org_id)
                    .where(escalations.c.conversation_id == conversation_id)
                    .where(escalations.c.status.in_(OPEN_ESCALATION_STATUSES))
                    .limit(1)
                )
            ).scalar_one_or_none()
        return str(found) if found else None

    async def create_escalation(
        self,
        conversation_id: str,
        org_id: str,
        reason: str,
        priority: EscalationPriority,
    ) -> str:
        async with self.engine.begin() as conn:
            result = await conn.execute(
                insert(escalations)
                .values(
                    org_id=org_id,
                    conversation_id=conversation_id,
                    reason=reason,
                    priority=priority,
                    status="pending",
                )
                .returning(escalations.c.id)
            )
            escalation_id = str(result.scalar_one())
        logger.info(
            "Created escalation",
            escalation_id=escalation_id,
            conversation_id=conversation_id,
            reason=reason,
            priority=priority,
        )
        return escalation_id
