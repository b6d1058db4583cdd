import copy
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest
from fastapi import FastAPI

from supportpilot.crawler import FetchedPage
from supportpilot.embedding import EmbeddingGenerator
from supportpilot.errors import register_exception_handlers
from supportpilot.rate_limit import VisitorRateLimiter
from supportpilot.retrieval import RetrievedChunk
from supportpilot.routes import chat, ingest, knowledge_base, widget
from supportpilot.schemas import StoredMessage
from supportpilot.services.chat_service import ChatService
from supportpilot.services.ingestion_service import IngestionService
from supportpilot.widget import OrganizationProfile, WidgetConfigRecord

ORG_ID = "11111111-1111-4111-8111-111111111111"
OTHER_ORG_ID = "22222222-2222-4222-8222-222222222222"
USER_ID = "user-1"


# ==================== Stores ====================

class FakeDocumentStore:
    def __init__(self):
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.fail_create = False
        self.on_update: Optional[Callable[[Dict[str, Any]], None]] = None

    async def create_document(self, org_id, title, source_type, metadata, document_id=None):
        if self.fail_create:
            raise ConnectionError("database unavailable")
        new_id = document_id or str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()
        self.rows[new_id] = {
            "id": new_id,
            "org_id": org_id,
            "title": title,
            "source_type": source_type,
            "status": "processing",
            "chunk_count": 0,
            "content": None,
            "metadata": copy.deepcopy(metadata),
            "created_at": now,
            "updated_at": now,
        }
        return new_id

    async def get_document(self, document_id, org_id):
        row = self.rows.get(document_id)
        if row is None or row["org_id"] != org_id:
            return None
        return {k: copy.deepcopy(v) for k, v in row.items() if k not in ("org_id", "content")}

    async def update_document(self, document_id, org_id, metadata, status=None, content=None, chunk_count=None):
        row = self.rows.get(document_id)
        if row is None or row["org_id"] != org_id:
            return
        row["metadata"] = copy.deepcopy(metadata)
        if status is not None:
            row["status"] = status
        if content is not None:
            row["content"] = content
        if chunk_count is not None:
            row["chunk_count"] = chunk_count
        if self.on_update is not None:
            self.on_update(row)

    async def delete_document(self, document_id, org_id):
        row = self.rows.get(document_id)
        if row is None or row["org_id"] != org_id:
            return False
        del self.rows[document_id]
        return True

    def stage_of(self, document_id) -> str:
        return self.rows[document_id]["metadata"]["ingestion"]["stage"]


class FakeChunkStore:
    def __init__(self, failures: int = 0):
        self.rows: List[Dict[str, Any]] = []
        self.failures = failures
        self.calls = 0

    async def insert_chunks(self, rows):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("connection reset by peer")
        self.rows.extend(rows)
        return len(rows)


class FakeEmbeddingBackend:
    def __init__(self, failures: int = 0, error: Optional[Exception] = None):
        self.calls: List[List[str]] = []
        self.failures = failures
        self.error = error or TimeoutError("embedding request timed out")

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return [[float(len(text)), 1.0, 0.0] for text in texts]


class FakeOrganizationStore:
    def __init__(self):
        self.organizations: Dict[str, OrganizationProfile] = {}
        self.widgets: Dict[str, WidgetConfigRecord] = {}
        self.members: Dict[str, str] = {}
        self.error: Optional[Exception] = None

    def add(self, org: OrganizationProfile, widget: Optional[WidgetConfigRecord] = None):
        self.organizations[org.id] = org
        if widget is not None:
            self.widgets[org.id] = widget

    async def get_member_org_id(self, user_id):
        if self.error:
            raise self.error
        return self.members.get(user_id)

    async def resolve_organization(self, identifier):
        if self.error:
            raise self.error
        for org in self.organizations.values():
            if org.id == identifier or org.slug == identifier:
                return org
        return None

    async def get_widget_config(self, org_id):
        return self.widgets.get(org_id)


class FakeConversationStore:
    def __init__(self):
        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.messages: List[Dict[str, Any]] = []
        self.escalations: List[Dict[str, Any]] = []
        self.user_message_count = 0
        self.fail_user_store = False
        self.fail_history = False

    async def find_conversation(self, conversation_id, org_id, visitor_id):
        conv = self.conversations.get(conversation_id)
        if conv and conv["org_id"] == org_id and conv["visitor_id"] == visitor_id:
            return conversation_id
        return None

    async def find_active_conversation(self, org_id, visitor_id):
        for conv_id, conv in reversed(list(self.conversations.items())):
            if conv["org_id"] == org_id and conv["visitor_id"] == visitor_id and conv["status"] == "active":
                return conv_id
        return None

    async def create_conversation(self, org_id, visitor_id, metadata):
        conv_id = str(uuid.uuid4())
        self.conversations[conv_id] = {
            "org_id": org_id,
            "visitor_id": visitor_id,
            "status": "active",
            "metadata": metadata,
        }
        return conv_id

    async def set_conversation_status(self, conversation_id, org_id, status):
        self.conversations[conversation_id]["status"] = status

    async def store_message(self, conversation_id, org_id, role, content, model=None, tokens_used=None, sources=None):
        if role == "user" and self.fail_user_store:
            raise ConnectionError("insert failed")
        message_id = str(uuid.uuid4())
        self.messages.append({
            "id": message_id,
            "conversation_id": conversation_id,
            "org_id": org_id,
            "role": role,
            "content": content,
            "model": model,
            "tokens_used": tokens_used,
            "sources": sources,
        })
        return message_id

    async def get_recent_messages(self, conversation_id, org_id, limit=10):
        if self.fail_history:
            raise ConnectionError("select failed")
        rows = [m for m in self.messages if m["conversation_id"] == conversation_id][-limit:]
        return [StoredMessage(role=m["role"], content=m["content"]) for m in rows]

    async def count_user_messages_since(self, org_id, since):
        return self.user_message_count

    async def find_open_escalation(self, conversation_id, org_id):
        for esc in self.escalations:
            if esc["conversation_id"] == conversation_id and esc["status"] in ("pending", "assigned"):
                return esc["id"]
        return None

    async def create_escalation(self, conversation_id, org_id, reason, priority):
        esc_id = str(uuid.uuid4())
        self.escalations.append({
            "id": esc_id,
            "conversation_id": conversation_id,
            "org_id": org_id,
            "reason": reason,
            "priority": priority,
            "status": "pending",
        })
        return esc_id

    def assistant_messages(self):
        return [m for m in self.messages if m["role"] == "assistant"]


# ==================== Providers ====================

class FakeClassifier:
    def __init__(self, intent: str = "SUPPORT_QUESTION", error: Optional[Exception] = None):
        self.intent = intent
        self.error = error
        self.messages: List[str] = []

    async def classify(self, message):
        self.messages.append(message)
        if self.error:
            raise self.error
        return self.intent


class FakeRetriever:
    def __init__(self, chunks: Optional[List[RetrievedChunk]] = None, error: Optional[Exception] = None):
        self.chunks = chunks or []
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def search_similar(self, org_id, query, match_threshold=0.7, match_count=5):
        self.calls.append({
            "org_id": org_id,
            "query": query,
            "match_threshold": match_threshold,
            "match_count": match_count,
        })
        if self.error:
            raise self.error
        return list(self.chunks)


class _FakeStream:
    def __init__(self, deltas: List[str], total_tokens: Optional[int], fail_after: Optional[int]):
        self._deltas = deltas
        self._total_tokens = total_tokens
        self._fail_after = fail_after

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for i, delta in enumerate(self._deltas):
            if self._fail_after is not None and i >= self._fail_after:
                raise ConnectionError("stream interrupted")
            yield SimpleNamespace(
                choices=[SimpleNamespace(delta=SimpleNamespace(content=delta))],
                usage=None,
            )
        if self._fail_after is not None and self._fail_after >= len(self._deltas):
            raise ConnectionError("stream interrupted")
        yield SimpleNamespace(choices=[], usage=SimpleNamespace(total_tokens=self._total_tokens))


class FakeOpenAI:
    """Just enough of AsyncOpenAI for chat completions, streamed or not."""

    def __init__(
        self,
        deltas: Optional[List[str]] = None,
        reply: str = "SUPPORT_QUESTION",
        total_tokens: Optional[int] = 42,
        fail_after: Optional[int] = None,
    ):
        self.deltas = deltas if deltas is not None else ["Our hours ", "are 9-5."]
        self.reply = reply
        self.total_tokens = total_tokens
        self.fail_after = fail_after
        self.requests: List[Dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.requests.append(kwargs)
        if kwargs.get("stream"):
            return _FakeStream(self.deltas, self.total_tokens, self.fail_after)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.reply))])


class FakePageFetcher:
    """Serves canned pages; unknown URLs answer 404."""

    def __init__(self, pages: Dict[str, tuple], robots: Optional[str] = None, robots_error: bool = False):
        self.pages = pages
        self.robots = robots
        self.robots_error = robots_error
        self.fetched: List[str] = []

    async def fetch_page(self, url, timeout):
        self.fetched.append(url)
        if url not in self.pages:
            return FetchedPage(url=url, status=404, content_type="text/html")
        content_type, body = self.pages[url]
        return FetchedPage(url=url, status=200, content_type=content_type, text=body)

    async def fetch_robots(self, url, timeout):
        if self.robots_error:
            raise ConnectionError("robots fetch failed")
        return self.robots


def html_page(body: str, links: Optional[List[str]] = None) -> str:
    anchors = "".join(f'<a href="{href}">link</a>' for href in (links or []))
    return (
        "<html><head><title>t</title><script>var x = 1;</script></head>"
        f"<body><nav>Menu Home About</nav><main><p>{body}</p>{anchors}</main>"
        "<footer>Copyright</footer></body></html>"
    )


def long_text(word: str = "refund", count: int = 60) -> str:
    return " ".join(f"{word}{i}" for i in range(count))


# ==================== Fixtures ====================

@pytest.fixture
def organization():
    return OrganizationProfile(
        id=ORG_ID,
        slug="acme",
        name="Acme Inc",
        plan="starter",
        settings={"tone_setting": "warm and upbeat"},
    )


@pytest.fixture
def org_store(organization):
    store = FakeOrganizationStore()
    store.add(
        organization,
        WidgetConfigRecord(
            org_id=ORG_ID,
            display_name="Acme Helper",
            is_active=True,
            allowed_domains=["acme.com", "*.acme.dev"],
        ),
    )
    store.members[USER_ID] = ORG_ID
    return store


@pytest.fixture
def document_store():
    return FakeDocumentStore()


@pytest.fixture
def chunk_store():
    return FakeChunkStore()


@pytest.fixture
def embedding_backend():
    return FakeEmbeddingBackend()


@pytest.fixture
def ingestion_service(document_store, chunk_store, embedding_backend):
    return IngestionService(
        documents=document_store,
        chunks=chunk_store,
        embedder=EmbeddingGenerator(embedding_backend),
        retry_base_delay_ms=1,
    )


@pytest.fixture
def conversation_store():
    return FakeConversationStore()


@pytest.fixture
def retrieved_chunks():
    return [
        RetrievedChunk(id="chunk-1", content="We are open 9am to 5pm on weekdays.", similarity=0.91),
        RetrievedChunk(id="chunk-2", content="Support is closed on public holidays.", similarity=0.78),
    ]


@pytest.fixture
def make_chat_service(org_store, conversation_store, retrieved_chunks):
    def _make(
        classifier=None,
        retriever=None,
        openai_client=None,
        rate_limiter=None,
    ):
        return ChatService(
            organizations=org_store,
            conversations=conversation_store,
            classifier=classifier or FakeClassifier(),
            retriever=retriever or FakeRetriever(retrieved_chunks),
            rate_limiter=rate_limiter or VisitorRateLimiter(),
            openai_client=openai_client,
            model_name="gpt-4o-mini",
        )

    return _make


@pytest.fixture
def make_app(org_store, document_store, ingestion_service, make_chat_service):
    """A FastAPI app with every router and in-memory collaborators; no lifespan."""

    def _make(chat_service=None, retriever=None):
        app = FastAPI()
        register_exception_handlers(app)
        app.include_router(ingest.router)
        app.include_router(chat.router)
        app.include_router(widget.router)
        app.include_router(knowledge_base.router)

        app.state.organization_store = org_store
        app.state.document_store = document_store
        app.state.ingestion_service = ingestion_service
        app.state.retrieval_engine = retriever or FakeRetriever()
        app.state.chat_service = chat_service or make_chat_service()
        return app

    return _make


async def collect(body) -> str:
    parts = []
    async for part in body:
        parts.append(part)
    return "".join(parts)
