"""
Ingestion service.
Turns an uploaded file, crawled site, inline text or FAQ pair into embedded,
retrievable chunks while persisting a progress snapshot at every stage.
"""
import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from ..cancellation import CancellationToken, IngestionCancelledError
from ..chunking import chunk_document_content
from ..crawler import DEFAULT_MAX_PAGES, DEFAULT_USER_AGENT, PageFetcher, crawl_website_for_content
from ..embedding import EmbeddingGenerator
from ..logging_config import logger
from ..retry import is_cancellation_error, is_retryable_error, is_retryable_extraction_error, with_retry
from ..schemas import DocumentStatus, IngestionProgress, IngestionStage, IngestResult, RetryCounts, SourceType, utc_now
from ..text_extraction import clean_text, extract_text_from_upload
from .document_service import ChunkStore, DocumentStore

MAX_INGEST_CONTENT_CHARS = 500_000
MIN_CONTENT_CHARS = 10
MIN_FAQ_FIELD_CHARS = 3

TERMINAL_DOCUMENT_STATUSES: Tuple[DocumentStatus, ...] = ("ready", "error")
INTERRUPTED_MESSAGE = "Ingestion interrupted before completion"

_PATH_RULE_SPLIT = re.compile(r"[\n,]")


class IngestionError(Exception):
    """A non-cancellation ingestion failure; the document ends in `error`."""


class DocumentCreateError(Exception):
    """The document row could not be created, so no ingestion run started."""


class DocumentNotFoundError(Exception):
    pass


class IngestionAlreadyFinishedError(Exception):
    pass


@dataclass
class UploadedFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class IngestionRequest:
    source_type: SourceType
    title: str
    document_id: Optional[str] = None
    url: Optional[str] = None
    allowed_paths: List[str] = field(default_factory=list)
    disallowed_paths: List[str] = field(default_factory=list)
    faq_question: str = ""
    faq_answer: str = ""
    text: str = ""
    file: Optional[UploadedFile] = None


@dataclass
class ExtractedContent:
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def parse_path_rules(value: Optional[str]) -> List[str]:
    """Split newline/comma separated path prefixes and make each one absolute."""
    if not value:
        return []
    rules = []
    for segment in _PATH_RULE_SPLIT.split(value):
        segment = segment.strip()
        if segment:
            rules.append(segment if segment.startswith("/") else f"/{segment}")
    return rules


def is_valid_http_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def trim_content_for_ingestion(content: str):
    """Cap content at MAX_INGEST_CONTENT_CHARS; returns (content, truncated)."""
    if len(content) <= MAX_INGEST_CONTENT_CHARS:
        return content, False
    return content[:MAX_INGEST_CONTENT_CHARS], True


class _IngestionRun:
    """Progress bookkeeping for one ingestion of one document."""

    def __init__(self, documents: DocumentStore, document_id: str, org_id: str):
        self.documents = documents
        self.document_id = document_id
        self.org_id = org_id
        self.retries = RetryCounts()
        self.metadata_state: Dict[str, Any] = {}
        self.token = CancellationToken(self._cancel_requested)

    async def _cancel_requested(self) -> bool:
        document = await self.documents.get_document(self.document_id, self.org_id)
        if document is None:
            raise IngestionError("Document no longer exists")
        progress = IngestionProgress.from_metadata(document["metadata"])
        return bool(progress and progress.cancel_requested)

    async def update_progress(
        self,
        stage: IngestionStage,
        message: str,
        status: Optional[str] = None,
        content: Optional[str] = None,
        chunk_count: Optional[int] = None,
        metadata_patch: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Persist a snapshot for `stage`, carrying forward the durable cancel flag.
        A failed read falls back to in-memory metadata; a failed write is logged.
        """
        persisted: Dict[str, Any] = {}
        cancel_requested = False
        cancel_requested_at = None
        try:
            document = await self.documents.get_document(self.document_id, self.org_id)
            if document is not None:
                persisted = document["metadata"]
                previous = IngestionProgress.from_metadata(persisted)
                if previous is not None:
                    cancel_requested = previous.cancel_requested
                    cancel_requested_at = previous.cancel_requested_at
        except Exception as e:
            logger.warning("Progress read failed; using in-memory snapshot", document_id=self.document_id, error=str(e))

        snapshot = IngestionProgress(
            stage=stage,
            progress_percent=stage.milestone,
            message=message,
            cancel_requested=cancel_requested or stage == IngestionStage.CANCELLED,
            cancel_requested_at=cancel_requested_at,
            retries=self.retries.model_copy(),
        )
        self.metadata_state = {
            **persisted,
            **self.metadata_state,
            **(metadata_patch or {}),
            "ingestion": snapshot.to_metadata(),
        }

        try:
            await self.documents.update_document(
                self.document_id,
                self.org_id,
                self.metadata_state,
                status=status,
                content=content,
                chunk_count=chunk_count,
            )
        except Exception as e:
            logger.error(
                "Failed to update ingestion progress",
                document_id=self.document_id,
                stage=stage.value,
                exc_info=e,
            )

    async def record_failure(self, message: str, cancelled: bool) -> None:
        await self.update_progress(
            IngestionStage.CANCELLED if cancelled else IngestionStage.FAILED,
            message,
            status="error",
            metadata_patch={
                "error": message,
                "ingestion_failed_at": utc_now().isoformat(),
                "cancelled": cancelled,
            },
        )


class IngestionService:
    """
    Drives the extraction, chunking, embedding, storing and finalizing stages.

    Cancellation is cooperative: it is observed before every stage, before every
    retry attempt, per crawled page and per embedding batch.
    """

    def __init__(
        self,
        documents: DocumentStore,
        chunks: ChunkStore,
        embedder: EmbeddingGenerator,
        page_fetcher: Optional[PageFetcher] = None,
        crawler_max_pages: int = DEFAULT_MAX_PAGES,
        crawler_user_agent: str = DEFAULT_USER_AGENT,
        retries: int = 2,
        retry_base_delay_ms: int = 300,
    ):
        self.documents = documents
        self.chunks = chunks
        self.embedder = embedder
        self.page_fetcher = page_fetcher
        self.crawler_max_pages = crawler_max_pages
        self.crawler_user_agent = crawler_user_agent
        self.retries = retries
        self.retry_base_delay_ms = retry_base_delay_ms

    # ==================== Extraction ====================

    async def extract_content(self, request: IngestionRequest, token: CancellationToken) -> ExtractedContent:
        """
        Extract normalized content for the request's source kind.

        Raises:
            ValueError: The source payload is missing or invalid
            CrawlError: The crawl could not start
            IngestionCancelledError: Cancellation was observed
        """
        if request.source_type == "url":
            url = (request.url or "").strip()
            if not is_valid_http_url(url):
                raise ValueError("A valid URL is required")

            crawled = await crawl_website_for_content(
                url,
                max_pages=self.crawler_max_pages,
                user_agent=self.crawler_user_agent,
                allowed_path_prefixes=request.allowed_paths,
                disallowed_path_prefixes=request.disallowed_paths,
                should_stop=token.is_cancelled,
                fetcher=self.page_fetcher,
            )
            return ExtractedContent(
                content=crawled.content,
                metadata={
                    "source_url": url,
                    "allowed_path_prefixes": list(request.allowed_paths),
                    "disallowed_path_prefixes": list(request.disallowed_paths),
                    **crawled.to_metadata(),
                },
            )

        if request.source_type == "faq":
            question = request.faq_question.strip()
            answer = request.faq_answer.strip()
            if len(question) < MIN_FAQ_FIELD_CHARS or len(answer) < MIN_FAQ_FIELD_CHARS:
                raise ValueError("FAQ question and answer are required")
            return ExtractedContent(
                content=clean_text(f"Question: {question}\nAnswer: {answer}"),
                metadata={"faq_question": question},
            )

        if request.source_type == "text":
            text = clean_text(request.text.strip())
            if len(text) < MIN_CONTENT_CHARS:
                raise ValueError("Text content is too short")
            return ExtractedContent(content=text)

        if request.file is None:
            raise ValueError("File upload is required")

        await token.raise_if_cancelled()

        upload = request.file
        content = await asyncio.to_thread(extract_text_from_upload, upload.filename, upload.data)
        return ExtractedContent(
            content=content,
            metadata={
                "file_name": upload.filename,
                "file_type": upload.content_type,
                "file_size": upload.size,
            },
        )

    # ==================== Pipeline ====================

    async def ingest(self, org_id: str, request: IngestionRequest) -> IngestResult:
        """
        Run one ingestion end to end, bound to the calling request.

        Args:
            org_id: Organization that owns the document
            request: Validated source kind, title and payload

        Returns:
            IngestResult with the document id, chunk count and retry counters

        Raises:
            DocumentCreateError: The document row could not be created
            IngestionCancelledError: Cancellation was requested mid-run
            IngestionError: Any other stage failure
        """
        queued = IngestionProgress()
        try:
            document_id = await self.documents.create_document(
                org_id=org_id,
                title=request.title,
                source_type=request.source_type,
                metadata={"ingestion": queued.to_metadata()},
                document_id=request.document_id,
            )
        except Exception as e:
            logger.error("Failed to create document row", org_id=org_id, exc_info=e)
            raise DocumentCreateError("Failed to create document") from e

        run = _IngestionRun(self.documents, document_id, org_id)
        token = run.token

        try:
            await token.raise_if_cancelled()
            await run.update_progress(IngestionStage.EXTRACTING, "Extracting source content", status="processing")

            async def _extract(attempt: int) -> ExtractedContent:
                run.retries.extraction = attempt
                await token.raise_if_cancelled()
                return await self.extract_content(request, token)

            extracted = await with_retry(
                _extract,
                retries=self.retries,
                base_delay_ms=self.retry_base_delay_ms,
                should_retry=is_retryable_extraction_error,
                label="extraction",
            )

            if not extracted.content or len(extracted.content) < MIN_CONTENT_CHARS:
                raise IngestionError("No usable content could be extracted from this source")

            await token.raise_if_cancelled()

            content, truncated = trim_content_for_ingestion(extracted.content)
            await run.update_progress(
                IngestionStage.CHUNKING,
                "Chunking document content",
                metadata_patch={
                    **extracted.metadata,
                    "content_truncated": truncated,
                    "content_characters": len(content),
                },
            )

            chunks = chunk_document_content(content, request.source_type, extracted.metadata)
            if not chunks:
                raise IngestionError("No chunks were generated for this document")

            await token.raise_if_cancelled()
            await run.update_progress(
                IngestionStage.EMBEDDING,
                "Generating embeddings",
                metadata_patch={"generated_chunk_count": len(chunks)},
            )

            texts = [chunk.content for chunk in chunks]

            async def _embed(attempt: int) -> List[List[float]]:
                run.retries.embedding = attempt
                await token.raise_if_cancelled()
                return await self.embedder.generate_embeddings_batch(texts, should_stop=token.is_cancelled)

            embeddings = await with_retry(
                _embed,
                retries=self.retries,
                base_delay_ms=self.retry_base_delay_ms,
                should_retry=is_retryable_error,
                label="embedding",
            )

            if len(embeddings) != len(chunks):
                raise IngestionError("Embedding count does not match chunk count")

            await token.raise_if_cancelled()
            await run.update_progress(IngestionStage.STORING, "Persisting vector chunks")

            rows = [
                {
                    "document_id": document_id,
                    "org_id": org_id,
                    "content": chunk.content,
                    "token_count": chunk.token_count,
                    "embedding": embeddings[i],
                    "metadata": chunk.metadata,
                }
                for i, chunk in enumerate(chunks)
            ]

            async def _store(attempt: int) -> int:
                run.retries.store_chunks = attempt
                await token.raise_if_cancelled()
                return await self.chunks.insert_chunks(rows)

            await with_retry(
                _store,
                retries=self.retries,
                base_delay_ms=self.retry_base_delay_ms,
                should_retry=is_retryable_error,
                label="store_chunks",
            )

            await token.raise_if_cancelled()
            await run.update_progress(IngestionStage.FINALIZING, "Finalizing document")
            await run.update_progress(
                IngestionStage.COMPLETED,
                "Ingestion completed",
                status="ready",
                content=content,
                chunk_count=len(chunks),
                metadata_patch={"ingestion_completed_at": utc_now().isoformat()},
            )
        except asyncio.CancelledError:
            logger.warning("Document ingestion interrupted", document_id=document_id)
            await asyncio.shield(run.record_failure(INTERRUPTED_MESSAGE, cancelled=True))
            raise
        except Exception as e:
            cancelled = is_cancellation_error(e)
            message = "Ingestion cancelled by user" if cancelled else (str(e) or "Unknown ingestion error")

            logger.error("Document ingestion failed", document_id=document_id, message=message, cancelled=cancelled)
            await run.record_failure(message, cancelled)
            if cancelled:
                raise IngestionCancelledError(message) from e
            raise IngestionError(message) from e

        logger.info(
            "Document ingestion completed",
            document_id=document_id,
            org_id=org_id,
            chunk_count=len(chunks),
            retries=run.retries.model_dump(),
        )
        return IngestResult(
            documentId=document_id,
            chunkCount=len(chunks),
            sourceType=request.source_type,
            retries=run.retries.model_copy(),
        )

    # ==================== Status and cancellation ====================

    async def get_document(self, document_id: str, org_id: str) -> Dict[str, Any]:
        document = await self.documents.get_document(document_id, org_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    async def request_cancellation(self, document_id: str, org_id: str) -> Dict[str, Any]:
        """
        Set the durable cancel flag on an in-flight ingestion.

        Raises:
            DocumentNotFoundError: No such document in this organization
            IngestionAlreadyFinishedError: The document is already ready or errored
        """
        document = await self.get_document(document_id, org_id)
        progress = IngestionProgress.from_metadata(document["metadata"])
        if document["status"] in TERMINAL_DOCUMENT_STATUSES or (progress is not None and progress.stage.is_terminal):
            raise IngestionAlreadyFinishedError(document_id)

        metadata = dict(document["metadata"])
        ingestion = dict(metadata.get("ingestion") or {})
        ingestion.update(
            cancel_requested=True,
            cancel_requested_at=utc_now().isoformat(),
            message="Cancellation requested",
        )
        metadata["ingestion"] = ingestion

        await self.documents.update_document(document_id, org_id, metadata)
        logger.info("Ingestion cancellation requested", document_id=document_id, org_id=org_id)
        return {"id": document_id, "cancelRequested": True}
