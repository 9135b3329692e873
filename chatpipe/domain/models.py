from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from chatpipe.core.config import EMBED_DIM


class Base(DeclarativeBase):
    pass


class PlanLimit(Base):
    __tablename__ = "plan_limits"

    # Per-tenant plan assignment; null overrides fall back to plan defaults.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    plan_code: Mapped[str] = mapped_column(String, default="starter")
    max_daily_messages: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_daily_rag_queries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retrieval_enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    rag_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    rag_max_results: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rate_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rate_window_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageCounterDaily(Base):
    __tablename__ = "usage_counters_daily"
    __table_args__ = (
        UniqueConstraint("tenant_id", "usage_date", name="uq_usage_counters_daily_tenant_date"),
    )

    # One row per tenant per UTC day; only ever incremented by upsert.
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    usage_date: Mapped[date] = mapped_column(Date)
    messages_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    tokens_in: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    tokens_out: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    docs_indexed_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    rag_queries_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Assistant(Base):
    __tablename__ = "assistants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    # At most one active default per tenant; new conversations are bound to it.
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # First-contact races collapse onto one row through this constraint.
        UniqueConstraint("tenant_id", "channel_id", "sender_id", name="uq_conversations_sender"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    channel_id: Mapped[str] = mapped_column(String)
    sender_id: Mapped[str] = mapped_column(String)
    assistant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active")
    # Derived cache of the daily quota comparison; cleared only by reset events.
    quota_blocked: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    quota_blocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    quota_blocked_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        # Appends are idempotent per conversation/external id.
        UniqueConstraint("conversation_id", "external_id", name="uq_messages_external"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(ForeignKey("conversations.id"), index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    direction: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String)
    external_id: Mapped[str] = mapped_column(String)
    llm_skipped: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    delivery_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    # Only indexed documents are visible to retrieval.
    status: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DocumentChunk(Base):
    __tablename__ = "document_chunks"

    # Monotonic id doubles as insertion order for deterministic tie-breaking.
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    document_id: Mapped[str] = mapped_column(String, ForeignKey("documents.id"))
    # Null assistant_id means the chunk is shared by every assistant of the tenant.
    assistant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    chunk_index: Mapped[int] = mapped_column(Integer)
    content: Mapped[str] = mapped_column(Text)
    token_count: Mapped[int] = mapped_column(Integer, default=0)
    # Keep vector dimension aligned with embedding generation and retrieval.
    embedding: Mapped[list[float] | None] = mapped_column(Vector(EMBED_DIM), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


Index("ix_assistants_tenant_default", Assistant.tenant_id, Assistant.is_default)
Index("ix_document_chunks_tenant_assistant", DocumentChunk.tenant_id, DocumentChunk.assistant_id)
Index("ix_document_chunks_document_id", DocumentChunk.document_id)
Index("ix_conversations_tenant_blocked", Conversation.tenant_id, Conversation.quota_blocked)
Index("ix_messages_conversation_created", Message.conversation_id, Message.created_at)
