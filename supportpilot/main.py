"""
Main FastAPI application entry point.
Responsibilities: App setup, router registration, startup/shutdown hooks.
"""
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from .classifier import IntentClassifier
from .config import get_settings
from .db import create_db_engine
from .db.migrations import run_migrations
from .embedding import EmbeddingGenerator, LocalEmbeddingBackend, build_embedding_backend
from .errors import register_exception_handlers
from .logging_config import bind_request_context, logger
from .openai_client import build_openai_client
from .rate_limit import VisitorRateLimiter
from .retrieval import RetrievalEngine
from .routes import chat, ingest, knowledge_base, widget
from .services.chat_service import ChatService
from .services.conversation_service import ConversationStore
from .services.document_service import ChunkStore, DocumentStore
from .services.ingestion_service import IngestionService
from .services.organization_service import OrganizationStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build clients and services once; dispose the engine on shutdown."""
    settings = get_settings()
    engine = create_db_engine(settings.database_url)

    try:
        logger.info("Running database migrations...")
        await run_migrations(engine)
    except Exception as e:
        logger.error("Startup initialization error", exc_info=e)
        # Continue anyway - app might still be usable

    openai_client = build_openai_client(settings)
    backend = build_embedding_backend(settings, openai_client)
    if isinstance(backend, LocalEmbeddingBackend):
        logger.info("Preloading embedding model...")
        backend.preload()
    embedder = EmbeddingGenerator(backend)

    document_store = DocumentStore(engine)
    organization_store = OrganizationStore(engine)
    retrieval_engine = RetrievalEngine(engine, embedder)

    app.state.document_store = document_store
    app.state.organization_store = organization_store
    app.state.retrieval_engine = retrieval_engine
    app.state.ingestion_service = IngestionService(
        documents=document_store,
        chunks=ChunkStore(engine),
        embedder=embedder,
        crawler_max_pages=settings.crawler_max_pages,
        crawler_user_agent=settings.crawler_user_agent,
    )
    app.state.chat_service = ChatService(
        organizations=organization_store,
        conversations=ConversationStore(engine),
        classifier=IntentClassifier(openai_client, settings.classifier_model),
        retriever=retrieval_engine,
        rate_limiter=VisitorRateLimiter(limit=settings.visitor_hourly_limit),
        openai_client=openai_client,
        model_name=settings.openai_model,
    )
    logger.info("Application started", generation_enabled=settings.generation_enabled)

    yield

    logger.info("Application shutting down")
    await engine.dispose()


# -------------------------------------------------
# App setup
# -------------------------------------------------

app = FastAPI(title="SupportPilot", version="0.6.0", lifespan=lifespan)

register_exception_handlers(app)

# Register routers
app.include_router(ingest.router)
app.include_router(chat.router)
app.include_router(widget.router)
app.include_router(knowledge_base.router)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Bind a request id to every log line emitted while serving the request."""
    request_id = bind_request_context(request.headers.get("x-request-id"))

    start = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    logger.info(
        "Request handled",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        time_ms=round((time.perf_counter() - start) * 1000, 2),
    )
    return response


@app.get("/health")
async def health():
    return {"status": "ok"}
