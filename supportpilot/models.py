import uuid

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    PrimaryKeyConstraint,
    Text,
    TIMESTAMP,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import declarative_base
from pgvector.sqlalchemy import Vector

from .config import get_settings

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


# ==================== Collaborator tables (read-only here) ====================

class Organization(Base):
    __tablename__ = "organizations"
    id = Column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    slug = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    plan = Column(Text, nullable=False, server_default=text("'free'"))
    settings = Column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    created_at = Column(TIMESTAMP(timezone=True), server_default=text("NOW()"))


class OrgMember(Base):
    __tablename__ = "org_members"
    __table_args__ = (PrimaryKeyConstraint("user_id", "org_id"),)
    user_id = Column(Text, nullable=False)
    org_id = Column(UUID(as_uuid=False), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    role = Column(Text, nullable=False, server_default=text("'member'"))


class WidgetConfig(Base):
    __tablename__ = "widget_configs"
    org_id = Column(UUID(as_uuid=False), ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True)
    display_name = Column(Text)
    welcome_message = Column(Text)
    primary_color = Column(Text)
    position = Column(Text)
    avatar_url = Column(Text)
    is_active = Column(Boolean)
    allowed_domains = Column(ARRAY(Text))


# ==================== Knowledge base ====================

class Document(Base):
    __tablename__ = "documents"
    id = Column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    org_id = Column(UUID(as_uuid=False), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    source_type = Column(Text, nullable=False)
    status = Column(Text, nullable=False, server_default=text("'processing'"))
    chunk_count = Column(Integer, nullable=False, server_default=text("0"))
    content = Column(Text)
    extra_metadata = Column("metadata", JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    created_at = Column(TIMESTAMP(timezone=True), server_default=text("NOW()"))
    updated_at = Column(TIMESTAMP(timezone=True), server_default=text("NOW()"))


class DocumentChunk(Base):
    __tablename__ = "document_chunks"
    id = Column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    document_id = Column(UUID(as_uuid=False), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    org_id = Column(UUID(as_uuid=False), nullable=False, index=True)
    content = Column(Text, nullable=False)
    token_count = Column(Integer, nullable=False)
    embedding = Column(Vector(get_settings().embed_dimensions), nullable=False)
    extra_metadata = Column("metadata", JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    created_at = Column(TIMESTAMP(timezone=True), server_default=text("NOW()"))


# ==================== Conversations ====================

class Conversation(Base):
    __tablename__ = "conversations"
    id = Column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    org_id = Column(UUID(as_uuid=False), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    visitor_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False, server_default=text("'active'"))
    extra_metadata = Column("metadata", JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    created_at = Column(TIMESTAMP(timezone=True), server_default=text("NOW()"))


class Message(Base):
    __tablename__ = "messages"
    id = Column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    conversation_id = Column(UUID(as_uuid=False), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    org_id = Column(UUID(as_uuid=False), nullable=False)
    role = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    model = Column(Text)
    tokens_used = Column(Integer)
    sources = Column(JSONB(none_as_null=True))
    created_at = Column(TIMESTAMP(timezone=True), server_default=text("clock_timestamp()"))


class Escalation(Base):
    __tablename__ = "escalations"
    id = Column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    org_id = Column(UUID(as_uuid=False), nullable=False)
    conversation_id = Column(UUID(as_uuid=False), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    reason = Column(Text, nullable=False)
    priority = Column(Text, nullable=False, server_default=text("'medium'"))
    status = Column(Text, nullable=False, server_default=text("'pending'"))
    created_at = Column(TIMESTAMP(timezone=True), server_default=text("NOW()"))
