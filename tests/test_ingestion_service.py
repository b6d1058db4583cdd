import asyncio

import pytest

from supportpilot.cancellation import IngestionCancelledError
from supportpilot.embedding import EmbeddingGenerator
from supportpilot.services.ingestion_service import (
    DocumentCreateError,
    DocumentNotFoundError,
    IngestionAlreadyFinishedError,
    IngestionError,
    IngestionRequest,
    IngestionService,
    UploadedFile,
    parse_path_rules,
    trim_content_for_ingestion,
    MAX_INGEST_CONTENT_CHARS,
)

from conftest import ORG_ID, OTHER_ORG_ID, FakeChunkStore, FakeEmbeddingBackend, FakePageFetcher, html_page, long_text

FAQ_ANSWER = "You can request a refund within 30 days of purchase by contacting support."


def text_request(text="Our store opens at 9am and closes at 5pm every weekday.", **kwargs):
    return IngestionRequest(source_type="text", title="Opening hours", text=text, **kwargs)


@pytest.mark.asyncio
async def test_text_ingestion_completes(ingestion_service, document_store, chunk_store):
    result = await ingestion_service.ingest(ORG_ID, text_request())

    assert result.chunkCount == 1
    assert result.sourceType == "text"
    assert result.retries.model_dump() == {"extraction": 1, "embedding": 1, "store_chunks": 1}

    row = document_store.rows[result.documentId]
    assert row["status"] == "ready"
    assert row["chunk_count"] == 1
    assert row["content"].startswith("Our store opens")

    progress = row["metadata"]["ingestion"]
    assert progress["stage"] == "completed"
    assert progress["progress_percent"] == 100
    assert progress["cancel_requested"] is False
    assert row["metadata"]["generated_chunk_count"] == 1
    assert "ingestion_completed_at" in row["metadata"]

    assert len(chunk_store.rows) == 1
    stored = chunk_store.rows[0]
    assert stored["org_id"] == ORG_ID
    assert stored["document_id"] == result.documentId
    assert stored["metadata"]["source_type"] == "text"
    assert stored["metadata"]["chunk_index"] == 0
    assert len(stored["embedding"]) == 3


@pytest.mark.asyncio
async def test_progress_walks_through_stages_in_order(ingestion_service, document_store):
    seen = []
    document_store.on_update = lambda row: seen.append(
        (row["metadata"]["ingestion"]["stage"], row["metadata"]["ingestion"]["progress_percent"])
    )

    await ingestion_service.ingest(ORG_ID, text_request())

    assert seen == [
        ("extracting", 15),
        ("chunking", 35),
        ("embedding", 55),
        ("storing", 78),
        ("finalizing", 92),
        ("completed", 100),
    ]


@pytest.mark.asyncio
async def test_client_supplied_document_id_is_used(ingestion_service, document_store):
    document_id = "33333333-3333-4333-8333-333333333333"
    result = await ingestion_service.ingest(ORG_ID, text_request(document_id=document_id))
    assert result.documentId == document_id
    assert document_id in document_store.rows


@pytest.mark.asyncio
async def test_faq_ingestion_formats_question_and_answer(ingestion_service, chunk_store):
    request = IngestionRequest(
        source_type="faq",
        title="Refunds",
        faq_question="How do refunds work?",
        faq_answer=FAQ_ANSWER,
    )
    await ingestion_service.ingest(ORG_ID, request)

    chunk = chunk_store.rows[0]
    assert chunk["content"] == f"Question: How do refunds work?\nAnswer: {FAQ_ANSWER}"
    assert chunk["metadata"]["faq_question"] == "How do refunds work?"


@pytest.mark.asyncio
async def test_faq_requires_question_and_answer(ingestion_service, document_store):
    request = IngestionRequest(source_type="faq", title="Refunds", faq_question="Hi", faq_answer=FAQ_ANSWER)
    with pytest.raises(IngestionError, match="FAQ question and answer are required"):
        await ingestion_service.ingest(ORG_ID, request)


@pytest.mark.asyncio
async def test_short_text_fails_without_retry(ingestion_service, document_store):
    with pytest.raises(IngestionError, match="Text content is too short"):
        await ingestion_service.ingest(ORG_ID, text_request(text="tiny"))

    (row,) = document_store.rows.values()
    assert row["status"] == "error"
    assert row["metadata"]["error"] == "Text content is too short"
    assert row["metadata"]["cancelled"] is False
    assert row["metadata"]["ingestion"]["stage"] == "failed"
    assert row["metadata"]["ingestion"]["progress_percent"] == 100
    assert row["metadata"]["ingestion"]["retries"]["extraction"] == 1


@pytest.mark.asyncio
async def test_transient_embedding_failure_is_retried(document_store, chunk_store):
    backend = FakeEmbeddingBackend(failures=1)
    service = IngestionService(document_store, chunk_store, EmbeddingGenerator(backend), retry_base_delay_ms=1)

    result = await service.ingest(ORG_ID, text_request())

    assert result.retries.embedding == 2
    assert len(backend.calls) == 2
    assert document_store.rows[result.documentId]["status"] == "ready"


@pytest.mark.asyncio
async def test_transient_store_failure_is_retried(document_store, embedding_backend):
    chunks = FakeChunkStore(failures=2)
    service = IngestionService(document_store, chunks, EmbeddingGenerator(embedding_backend), retry_base_delay_ms=1)

    result = await service.ingest(ORG_ID, text_request())

    assert result.retries.store_chunks == 3
    assert chunks.calls == 3
    assert len(chunks.rows) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_document(document_store, embedding_backend):
    chunks = FakeChunkStore(failures=5)
    service = IngestionService(document_store, chunks, EmbeddingGenerator(embedding_backend), retry_base_delay_ms=1)

    with pytest.raises(IngestionError, match="connection reset"):
        await service.ingest(ORG_ID, text_request())

    assert chunks.calls == 3
    (row,) = document_store.rows.values()
    assert row["status"] == "error"
    assert row["metadata"]["ingestion"]["retries"]["store_chunks"] == 3


@pytest.mark.asyncio
async def test_non_transient_embedding_error_is_not_retried(document_store, chunk_store):
    backend = FakeEmbeddingBackend(failures=1, error=ValueError("invalid input payload"))
    service = IngestionService(document_store, chunk_store, EmbeddingGenerator(backend), retry_base_delay_ms=1)

    with pytest.raises(IngestionError, match="invalid input payload"):
        await service.ingest(ORG_ID, text_request())
    assert len(backend.calls) == 1


class _DroppingBackend(FakeEmbeddingBackend):
    async def embed(self, texts):
        vectors = await super().embed(texts)
        return vectors[:-1]


@pytest.mark.asyncio
async def test_embedding_count_mismatch_fails_the_run(document_store, chunk_store):
    service = IngestionService(document_store, chunk_store, EmbeddingGenerator(_DroppingBackend()), retry_base_delay_ms=1)

    with pytest.raises(IngestionError, match="Embedding count does not match chunk count"):
        await service.ingest(ORG_ID, text_request())

    (row,) = document_store.rows.values()
    assert row["status"] == "error"
    assert chunk_store.rows == []


@pytest.mark.asyncio
async def test_cancellation_observed_before_embedding(ingestion_service, document_store, chunk_store, embedding_backend):
    def request_cancel(row):
        ingestion = row["metadata"]["ingestion"]
        if ingestion["stage"] == "embedding":
            ingestion["cancel_requested"] = True

    document_store.on_update = request_cancel

    with pytest.raises(IngestionCancelledError):
        await ingestion_service.ingest(ORG_ID, text_request())

    (row,) = document_store.rows.values()
    assert row["status"] == "error"
    assert row["metadata"]["cancelled"] is True
    assert row["metadata"]["error"] == "Ingestion cancelled by user"
    assert row["metadata"]["ingestion"]["stage"] == "cancelled"
    assert row["metadata"]["ingestion"]["cancel_requested"] is True
    assert embedding_backend.calls == []
    assert chunk_store.rows == []


class _HangingBackend(FakeEmbeddingBackend):
    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()

    async def embed(self, texts):
        self.started.set()
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_interrupted_ingestion_task_leaves_terminal_state(document_store, chunk_store):
    backend = _HangingBackend()
    service = IngestionService(document_store, chunk_store, EmbeddingGenerator(backend), retry_base_delay_ms=1)

    task = asyncio.create_task(service.ingest(ORG_ID, text_request()))
    await asyncio.wait_for(backend.started.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    (row,) = document_store.rows.values()
    assert row["status"] == "error"
    assert row["metadata"]["cancelled"] is True
    assert row["metadata"]["ingestion"]["stage"] == "cancelled"
    assert row["metadata"]["ingestion"]["message"] == "Ingestion interrupted before completion"
    assert chunk_store.rows == []


@pytest.mark.asyncio
async def test_cancel_flag_survives_later_progress_writes(ingestion_service, document_store):
    def request_cancel(row):
        ingestion = row["metadata"]["ingestion"]
        if ingestion["stage"] == "extracting":
            ingestion["cancel_requested"] = True
            ingestion["cancel_requested_at"] = "2026-01-01T00:00:00+00:00"

    document_store.on_update = request_cancel

    with pytest.raises(IngestionCancelledError):
        await ingestion_service.ingest(ORG_ID, text_request())

    (row,) = document_store.rows.values()
    assert row["metadata"]["ingestion"]["cancel_requested_at"].startswith("2026-01-01T00:00:00")


@pytest.mark.asyncio
async def test_document_create_failure(ingestion_service, document_store):
    document_store.fail_create = True
    with pytest.raises(DocumentCreateError):
        await ingestion_service.ingest(ORG_ID, text_request())


@pytest.mark.asyncio
async def test_text_file_upload(ingestion_service, document_store, chunk_store):
    upload = UploadedFile(
        filename="hours.txt",
        content_type="text/plain",
        data=b"Opening hours\n\n\n\nMonday to Friday, 9am   to 5pm.",
    )
    request = IngestionRequest(source_type="pdf", title="Hours file", file=upload)

    result = await ingestion_service.ingest(ORG_ID, request)

    metadata = document_store.rows[result.documentId]["metadata"]
    assert metadata["file_name"] == "hours.txt"
    assert metadata["file_type"] == "text/plain"
    assert metadata["file_size"] == len(upload.data)
    assert chunk_store.rows[0]["content"] == "Opening hours\n\nMonday to Friday, 9am to 5pm."


@pytest.mark.asyncio
async def test_missing_file_fails(ingestion_service):
    with pytest.raises(IngestionError, match="File upload is required"):
        await ingestion_service.ingest(ORG_ID, IngestionRequest(source_type="pdf", title="Missing"))


@pytest.mark.asyncio
async def test_unsupported_file_extension_fails(ingestion_service):
    upload = UploadedFile(filename="slides.pptx", content_type="application/octet-stream", data=b"xx")
    with pytest.raises(IngestionError, match="Unsupported file extension"):
        await ingestion_service.ingest(ORG_ID, IngestionRequest(source_type="docx", title="Slides", file=upload))


@pytest.mark.asyncio
async def test_url_ingestion_records_crawl_metadata(document_store, chunk_store, embedding_backend):
    fetcher = FakePageFetcher({
        "https://docs.acme.com/": ("text/html", html_page(long_text("welcome"), ["/help", "/blog/post"])),
        "https://docs.acme.com/help": ("text/html", html_page(long_text("help"))),
    })
    service = IngestionService(
        document_store,
        chunk_store,
        EmbeddingGenerator(embedding_backend),
        page_fetcher=fetcher,
        retry_base_delay_ms=1,
    )
    request = IngestionRequest(
        source_type="url",
        title="Docs",
        url="https://docs.acme.com",
        disallowed_paths=["/blog"],
    )

    result = await service.ingest(ORG_ID, request)

    metadata = document_store.rows[result.documentId]["metadata"]
    assert metadata["source_url"] == "https://docs.acme.com"
    assert metadata["disallowed_path_prefixes"] == ["/blog"]
    assert metadata["pages_crawled"] == 2
    assert metadata["pages_with_content"] == 2
    assert metadata["visited_urls"] == ["https://docs.acme.com/", "https://docs.acme.com/help"]
    assert metadata["crawl_truncated"] is False
    assert "https://docs.acme.com/blog/post" not in fetcher.fetched
    assert "URL: https://docs.acme.com/help" in chunk_store.rows[0]["content"]


@pytest.mark.asyncio
async def test_url_ingestion_requires_valid_url(ingestion_service):
    request = IngestionRequest(source_type="url", title="Docs", url="ftp://example.com")
    with pytest.raises(IngestionError, match="A valid URL is required"):
        await ingestion_service.ingest(ORG_ID, request)


@pytest.mark.asyncio
async def test_url_without_usable_pages_fails(document_store, chunk_store, embedding_backend):
    fetcher = FakePageFetcher({"https://acme.com/": ("text/html", html_page("too short"))})
    service = IngestionService(
        document_store, chunk_store, EmbeddingGenerator(embedding_backend), page_fetcher=fetcher, retry_base_delay_ms=1
    )
    with pytest.raises(IngestionError, match="No usable content"):
        await service.ingest(ORG_ID, IngestionRequest(source_type="url", title="Site", url="https://acme.com"))


# ==================== Status and cancellation ====================

@pytest.mark.asyncio
async def test_request_cancellation_sets_durable_flag(ingestion_service, document_store):
    document_id = await document_store.create_document(
        ORG_ID, "Pending", "text", {"ingestion": {"stage": "embedding", "progress_percent": 55}}
    )

    result = await ingestion_service.request_cancellation(document_id, ORG_ID)

    assert result == {"id": document_id, "cancelRequested": True}
    ingestion = document_store.rows[document_id]["metadata"]["ingestion"]
    assert ingestion["cancel_requested"] is True
    assert ingestion["cancel_requested_at"]
    assert ingestion["message"] == "Cancellation requested"
    assert ingestion["stage"] == "embedding"


@pytest.mark.asyncio
async def test_cancelling_finished_ingestion_is_rejected(ingestion_service):
    result = await ingestion_service.ingest(ORG_ID, text_request())
    with pytest.raises(IngestionAlreadyFinishedError):
        await ingestion_service.request_cancellation(result.documentId, ORG_ID)


@pytest.mark.asyncio
async def test_documents_are_scoped_to_their_organization(ingestion_service):
    result = await ingestion_service.ingest(ORG_ID, text_request())
    with pytest.raises(DocumentNotFoundError):
        await ingestion_service.get_document(result.documentId, OTHER_ORG_ID)
    with pytest.raises(DocumentNotFoundError):
        await ingestion_service.request_cancellation(result.documentId, OTHER_ORG_ID)


# ==================== Helpers ====================

def test_parse_path_rules():
    assert parse_path_rules("docs, /help\nblog/ ,,") == ["/docs", "/help", "/blog/"]
    assert parse_path_rules(None) == []
    assert parse_path_rules("") == []


def test_trim_content_for_ingestion():
    content, truncated = trim_content_for_ingestion("x" * (MAX_INGEST_CONTENT_CHARS + 5))
    assert truncated is True
    assert len(content) == MAX_INGEST_CONTENT_CHARS

    content, truncated = trim_content_for_ingestion("short")
    assert (content, truncated) == ("short", False)


@pytest.mark.asyncio
async def test_cancelling_after_terminal_stage_is_rejected(ingestion_service, document_store):
    document_id = await document_store.create_document(
        ORG_ID, "Stale", "text", {"ingestion": {"stage": "failed", "progress_percent": 100}}
    )
    assert document_store.rows[document_id]["status"] == "processing"

    with pytest.raises(IngestionAlreadyFinishedError):
        await ingestion_service.request_cancellation(document_id, ORG_ID)
