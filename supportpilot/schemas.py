"""
Pydantic schemas for request/response validation and ingestion progress.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, get_args
from uuid import UUID

from pydantic import BaseModel, Field

SourceType = Literal["pdf", "docx", "csv", "url", "text", "faq"]
DocumentStatus = Literal["processing", "ready", "error"]
MessageRole = Literal["user", "assistant", "system", "human_agent"]
EscalationPriority = Literal["low", "medium", "high", "urgent"]
OrganizationPlan = Literal["free", "starter", "pro", "enterprise"]

SOURCE_TYPES = get_args(SourceType)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== Ingestion ====================

class IngestionStage(str, Enum):
    QUEUED = "queued"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    STORING = "storing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES

    @property
    def milestone(self) -> int:
        return STAGE_MILESTONES[self]


TERMINAL_STAGES = frozenset({IngestionStage.COMPLETED, IngestionStage.FAILED, IngestionStage.CANCELLED})

STAGE_MILESTONES = {
    IngestionStage.QUEUED: 0,
    IngestionStage.EXTRACTING: 15,
    IngestionStage.CHUNKING: 35,
    IngestionStage.EMBEDDING: 55,
    IngestionStage.STORING: 78,
    IngestionStage.FINALIZING: 92,
    IngestionStage.COMPLETED: 100,
    IngestionStage.FAILED: 100,
    IngestionStage.CANCELLED: 100,
}


class RetryCounts(BaseModel):
    """Attempts used per retried stage. Counters start at 1 (the first attempt)."""
    extraction: int = 1
    embedding: int = 1
    store_chunks: int = 1


class IngestionProgress(BaseModel):
    """Snapshot stored under `metadata["ingestion"]` on the document row."""
    stage: IngestionStage = IngestionStage.QUEUED
    progress_percent: int = Field(0, ge=0, le=100)
    message: str = "Queued for ingestion"
    cancel_requested: bool = False
    cancel_requested_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)
    retries: RetryCounts = Field(default_factory=RetryCounts)

    def to_metadata(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_metadata(cls, metadata: Optional[Dict[str, Any]]) -> Optional["IngestionProgress"]:
        raw = (metadata or {}).get("ingestion")
        if not isinstance(raw, dict):
            return None
        return cls.model_validate(raw)


class IngestResult(BaseModel):
    documentId: str
    chunkCount: int
    sourceType: str
    retries: RetryCounts


# ==================== Chat ====================

class ChatRequest(BaseModel):
    """Public widget chat payload."""
    org_id: str = Field(..., min_length=1, max_length=128)
    visitor_id: str = Field(..., min_length=1, max_length=128)
    conversation_id: Optional[UUID] = None
    message: str = Field(..., min_length=1, max_length=4000)


class StoredMessage(BaseModel):
    role: MessageRole
    content: str


class MessageSource(BaseModel):
    id: str
    similarity: float


# ==================== Knowledge base ====================

class KnowledgeBaseTestRequest(BaseModel):
    question: str = Field(..., min_length=3, max_length=1000)
    threshold: float = Field(0.7, ge=0.0, le=1.0)
    limit: int = Field(5, ge=1, le=20)


class ChunkMatch(BaseModel):
    id: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    similarity: float


class KnowledgeBaseTestResult(BaseModel):
    question: str
    matches: List[ChunkMatch]


class PublicWidgetConfigOut(BaseModel):
    org_id: str
    display_name: str
    welcome_message: str
    primary_color: str
    position: Literal["bottom-right", "bottom-left"]
    avatar_url: Optional[str] = None
    powered_by: bool
