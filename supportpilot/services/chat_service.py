"""
Chat service.
Handles one widget chat turn: quotas, conversation resolution, classification,
rule-based or retrieval-grounded replies, escalation and persistence.
"""
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Tuple

from openai import AsyncOpenAI
from sqlalchemy.exc import IntegrityError

from ..classifier import IntentClassifier
from ..errors import ApiError
from ..logging_config import logger
from ..openai_client import CompletionUsage, stream_chat_completion
from ..prompts import (
    CLARIFY_REPLY,
    COMPLAINT_REPLY,
    ESCALATION_REPLY,
    GREETING_REPLY,
    NO_ANSWER_REPLY,
    NO_CONTEXT_TEXT,
    NO_HISTORY_TEXT,
    NOT_CONFIGURED_REPLY,
    SPAM_REPLY,
    STREAM_INTERRUPTED_TEXT,
    build_chat_system_prompt,
)
from ..rate_limit import VisitorRateLimiter, plan_daily_limit, start_of_utc_day
from ..retrieval import RetrievalEngine, build_retrieved_context
from ..schemas import ChatRequest, EscalationPriority, MessageSource, StoredMessage
from ..widget import (
    OrganizationProfile,
    PublicWidgetConfig,
    build_chat_cors_headers,
    build_public_widget_config,
    is_origin_allowed,
    resolve_tone_setting,
)
from .conversation_service import ConversationStore
from .organization_service import OrganizationStore

HISTORY_LIMIT = 10

VISITOR_MODEL_TAG = "visitor"
RULE_MODEL_TAG = "rule-based"
FALLBACK_MODEL_TAG = "fallback-no-llm-key"


@dataclass
class RuleReply:
    text: str
    escalates: bool = False
    reason: Optional[str] = None
    priority: EscalationPriority = "low"


@dataclass
class ChatTurnResult:
    """A reply ready to stream, plus the headers describing it."""
    conversation_id: str
    intent: str
    body: AsyncIterator[str]
    headers: Dict[str, str] = field(default_factory=dict)


def get_rule_based_reply(intent: str, display_name: str) -> RuleReply:
    if intent == "GREETING":
        return RuleReply(GREETING_REPLY.format(display_name=display_name))
    if intent == "SPAM":
        return RuleReply(SPAM_REPLY)
    if intent == "ESCALATION_REQUEST":
        return RuleReply(ESCALATION_REPLY, escalates=True, reason="Visitor requested human assistance", priority="high")
    if intent == "COMPLAINT":
        return RuleReply(COMPLAINT_REPLY, escalates=True, reason="Complaint detected", priority="high")
    return RuleReply(CLARIFY_REPLY)


def build_conversation_history_text(messages: List[StoredMessage]) -> str:
    if not messages:
        return NO_HISTORY_TEXT

    lines = []
    for message in messages:
        if message.role == "user":
            lines.append(f"Customer: {message.content}")
        elif message.role == "human_agent":
            lines.append(f"Human agent: {message.content}")
        else:
            lines.append(f"Assistant: {message.content}")
    return "\n".join(lines)


def to_model_messages(messages: List[StoredMessage]) -> List[Dict[str, str]]:
    """History as chat turns; human-agent replies are replayed as assistant turns."""
    model_messages = []
    for message in messages:
        if message.role == "user":
            model_messages.append({"role": "user", "content": message.content})
        elif message.role == "human_agent":
            model_messages.append({"role": "assistant", "content": f"Human agent message: {message.content}"})
        else:
            model_messages.append({"role": "assistant", "content": message.content})
    return model_messages


async def single_chunk(text: str) -> AsyncIterator[str]:
    yield text


class ChatService:
    def __init__(
        self,
        organizations: OrganizationStore,
        conversations: ConversationStore,
        classifier: IntentClassifier,
        retriever: RetrievalEngine,
        rate_limiter: VisitorRateLimiter,
        openai_client: Optional[AsyncOpenAI],
        model_name: str = "gpt-4o-mini",
    ):
        self.organizations = organizations
        self.conversations = conversations
        self.classifier = classifier
        self.retriever = retriever
        self.rate_limiter = rate_limiter
        self.openai_client = openai_client
        self.model_name = model_name

    # ==================== Organization and origin ====================

    async def resolve_widget(self, org_identifier: str, origin: Optional[str]) -> Tuple[OrganizationProfile, PublicWidgetConfig]:
        """
        Load the organization and its public widget config.

        Raises:
            ApiError: ORG_NOT_FOUND when no organization matches the id or slug
        """
        organization = await self.organizations.resolve_organization(org_identifier)
        if organization is None:
            raise ApiError(404, "ORG_NOT_FOUND", "Organization not found", build_chat_cors_headers(origin, False))

        record = await self.organizations.get_widget_config(organization.id)
        return organization, build_public_widget_config(organization, record)

    async def preflight(self, org_identifier: Optional[str], origin: str) -> Dict[str, str]:
        """CORS headers for an allowed preflight; ApiError otherwise."""
        if not org_identifier:
            raise ApiError(400, "VALIDATION_ERROR", "Missing org_id query parameter", build_chat_cors_headers(origin, False))

        _, widget = await self.resolve_widget(org_identifier, origin)
        if not is_origin_allowed(origin, widget.allowed_domains):
            raise ApiError(403, "DOMAIN_NOT_ALLOWED", "Origin is not allowed", build_chat_cors_headers(origin, False))
        return build_chat_cors_headers(origin, True)

    # ==================== Conversation helpers ====================

    async def resolve_conversation(
        self,
        org_id: str,
        visitor_id: str,
        requested_id: Optional[str],
        origin: Optional[str],
        user_agent: Optional[str],
    ) -> str:
        """Requested conversation if it is this visitor's, else the latest active one, else a new one."""
        if requested_id:
            found = await self.conversations.find_conversation(requested_id, org_id, visitor_id)
            if found:
                return found

        active = await self.conversations.find_active_conversation(org_id, visitor_id)
        if active:
            return active

        return await self.conversations.create_conversation(
            org_id,
            visitor_id,
            {"origin": origin, "user_agent": user_agent},
        )

    async def ensure_escalation(
        self, conversation_id: str, org_id: str, reason: str, priority: EscalationPriority
    ) -> None:
        """
        Create an escalation unless one is already open, then mark the conversation escalated.
        A concurrent turn that wins the insert trips the open-escalation unique index; its row is reused.
        """
        existing = await self.conversations.find_open_escalation(conversation_id, org_id)
        if existing is None:
            try:
                await self.conversations.create_escalation(conversation_id, org_id, reason, priority)
            except IntegrityError:
                logger.info("Open escalation created concurrently; reusing it", conversation_id=conversation_id)
        else:
            logger.info("Reusing open escalation", escalation_id=existing, conversation_id=conversation_id)
        await self.conversations.set_conversation_status(conversation_id, org_id, "escalated")

    async def _store_assistant_message(self, conversation_id: str, org_id: str, content: str, **fields) -> None:
        try:
            await self.conversations.store_message(conversation_id, org_id, "assistant", content, **fields)
        except Exception as e:
            logger.error("Failed to persist assistant message", conversation_id=conversation_id, exc_info=e)

    async def _check_plan_quota(self, organization: OrganizationProfile, headers: Dict[str, str]) -> None:
        limit = plan_daily_limit(organization.plan)
        if limit is None:
            return
        used = await self.conversations.count_user_messages_since(organization.id, start_of_utc_day())
        if used >= limit:
            raise ApiError(429, "PLAN_LIMIT_REACHED", "Plan daily message limit reached", headers)

    # ==================== Chat turn ====================

    async def handle_turn(
        self,
        payload: ChatRequest,
        origin: Optional[str],
        user_agent: Optional[str] = None,
        query_org_id: Optional[str] = None,
    ) -> ChatTurnResult:
        """
        Process one visitor message.

        Args:
            payload: Validated chat request
            origin: Browser Origin header, if any
            user_agent: Visitor user agent, recorded on new conversations
            query_org_id: org_id from the query string; must match the body

        Returns:
            ChatTurnResult whose body streams the assistant reply

        Raises:
            ApiError: Validation, organization, widget, origin, quota or persistence failures
        """
        start_time = time.time()
        vary_only = build_chat_cors_headers(origin, False)

        if query_org_id and query_org_id != payload.org_id:
            raise ApiError(400, "VALIDATION_ERROR", "Mismatched org_id", vary_only)

        organization, widget = await self.resolve_widget(payload.org_id, origin)

        if not widget.is_active:
            raise ApiError(403, "WIDGET_INACTIVE", "Widget is inactive", vary_only)

        if origin and not is_origin_allowed(origin, widget.allowed_domains):
            raise ApiError(403, "DOMAIN_NOT_ALLOWED", "Origin is not allowed", vary_only)

        cors_headers = build_chat_cors_headers(origin, True)

        decision = self.rate_limiter.consume(organization.id, payload.visitor_id)
        if not decision.allowed:
            raise ApiError(
                429,
                "VISITOR_RATE_LIMITED",
                "Visitor hourly limit reached",
                {**cors_headers, "Retry-After": str(decision.retry_after_seconds)},
            )

        await self._check_plan_quota(organization, cors_headers)

        conversation_id = await self.resolve_conversation(
            organization.id,
            payload.visitor_id,
            str(payload.conversation_id) if payload.conversation_id else None,
            origin,
            user_agent,
        )

        try:
            await self.conversations.store_message(
                conversation_id, organization.id, "user", payload.message, model=VISITOR_MODEL_TAG
            )
        except Exception as e:
            logger.error("Failed to persist user message", conversation_id=conversation_id, exc_info=e)
            raise ApiError(500, "MESSAGE_STORE_FAILED", "Failed to persist message", cors_headers) from e

        try:
            history = await self.conversations.get_recent_messages(conversation_id, organization.id, HISTORY_LIMIT)
        except Exception as e:
            logger.error("Failed to load conversation history", conversation_id=conversation_id, exc_info=e)
            raise ApiError(500, "HISTORY_LOOKUP_FAILED", "Failed to load conversation history", cors_headers) from e

        intent = "OTHER"
        try:
            intent = await self.classifier.classify(payload.message)
        except Exception as e:
            logger.error("Intent classification failed; falling back to OTHER", error=str(e))

        headers = {**cors_headers, "X-Conversation-Id": conversation_id, "X-Intent": intent}

        if intent != "SUPPORT_QUESTION":
            reply = get_rule_based_reply(intent, widget.display_name)
            if reply.escalates and reply.reason:
                await self.ensure_escalation(conversation_id, organization.id, reply.reason, reply.priority)

            await self._store_assistant_message(conversation_id, organization.id, reply.text, model=RULE_MODEL_TAG)

            logger.info(
                "Chat turn completed (rule-based)",
                conversation_id=conversation_id,
                intent=intent,
                escalated=reply.escalates,
                time_ms=round((time.time() - start_time) * 1000, 2),
            )
            return ChatTurnResult(conversation_id, intent, single_chunk(reply.text), headers)

        return await self._grounded_reply(organization, conversation_id, payload.message, history, headers, start_time)

    async def _grounded_reply(
        self,
        organization: OrganizationProfile,
        conversation_id: str,
        message: str,
        history: List[StoredMessage],
        headers: Dict[str, str],
        start_time: float,
    ) -> ChatTurnResult:
        sources: List[Dict[str, object]] = []
        context = NO_CONTEXT_TEXT
        try:
            chunks = await self.retriever.search_similar(organization.id, message)
            sources = [MessageSource(id=chunk.id, similarity=chunk.similarity).model_dump() for chunk in chunks]
            if chunks:
                context = build_retrieved_context(chunks)
        except Exception as e:
            logger.error("Chunk retrieval failed; continuing with empty context", error=str(e))

        logger.info("Retrieved chunks", conversation_id=conversation_id, count=len(sources))

        system_prompt = build_chat_system_prompt(
            business_name=organization.name,
            tone_setting=resolve_tone_setting(organization.settings),
            retrieved_chunks=context,
            conversation_history=build_conversation_history_text(history),
        )

        if self.openai_client is None:
            await self._store_assistant_message(
                conversation_id,
                organization.id,
                NOT_CONFIGURED_REPLY,
                model=FALLBACK_MODEL_TAG,
                sources=sources,
            )
            return ChatTurnResult(
                conversation_id,
                "SUPPORT_QUESTION",
                single_chunk(NOT_CONFIGURED_REPLY),
                {**headers, "X-Source-Count": str(len(sources))},
            )

        messages = [{"role": "system", "content": system_prompt}, *to_model_messages(history)]
        body = self._stream_generation(organization.id, conversation_id, messages, sources, start_time)
        return ChatTurnResult(
            conversation_id,
            "SUPPORT_QUESTION",
            body,
            {**headers, "X-Source-Count": str(len(sources))},
        )

    async def _stream_generation(
        self,
        org_id: str,
        conversation_id: str,
        messages: List[Dict[str, str]],
        sources: List[Dict[str, object]],
        start_time: float,
    ) -> AsyncIterator[str]:
        """Stream the model reply, then persist the final text."""
        usage = CompletionUsage()
        full_response = ""
        try:
            async for delta in stream_chat_completion(self.openai_client, self.model_name, messages, usage):
                full_response += delta
                yield delta
        except Exception as e:
            logger.error("Generation stream failed", conversation_id=conversation_id, exc_info=e)
            yield STREAM_INTERRUPTED_TEXT
            return

        final_text = full_response.strip()
        if not final_text:
            final_text = NO_ANSWER_REPLY
            yield final_text

        await self._store_assistant_message(
            conversation_id,
            org_id,
            final_text,
            model=self.model_name,
            tokens_used=usage.total_tokens,
            sources=sources,
        )
        logger.info(
            "Chat turn completed",
            conversation_id=conversation_id,
            source_count=len(sources),
            tokens_used=usage.total_tokens,
            time_ms=round((time.time() - start_time) * 1000, 2),
        )
