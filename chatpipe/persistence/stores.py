from __future__ import annotations

from datetime import date
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatpipe.core.errors import ConversationResolutionError, PersistenceError, QuotaLookupError
from chatpipe.domain.models import Conversation, Message
from chatpipe.persistence.repos import assistants as assistants_repo
from chatpipe.persistence.repos import conversations as conversations_repo
from chatpipe.persistence.repos import messages as messages_repo
from chatpipe.persistence.repos import plans as plans_repo
from chatpipe.persistence.repos import usage as usage_repo
from chatpipe.pipeline.interfaces import ConversationRef, MessageDraft, MessageRecord
from chatpipe.services.limits import TenantLimits, build_tenant_limits


SessionFactory = Callable[[], AsyncSession]


def _to_conversation_ref(row: Conversation) -> ConversationRef:
    return ConversationRef(
        id=row.id,
        tenant_id=row.tenant_id,
        channel_id=row.channel_id,
        sender_id=row.sender_id,
        assistant_id=row.assistant_id,
        quota_blocked=bool(row.quota_blocked),
    )


def _to_message_record(row: Message) -> MessageRecord:
    return MessageRecord(
        id=row.id,
        conversation_id=row.conversation_id,
        direction=row.direction,
        content=row.content,
        status=row.status,
        external_id=row.external_id,
        delivery_id=row.delivery_id,
        metadata=dict(row.metadata_json or {}),
        llm_skipped=bool(row.llm_skipped),
    )


class SqlConversationStore:
    # Short-lived session per call; nothing is held across external I/O.
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def resolve(self, tenant_id: str, channel_id: str, sender_id: str) -> ConversationRef:
        try:
            async with self._session_factory() as session:
                # Only applied when this call creates the conversation.
                assistant_id = await assistants_repo.get_default_assistant_id(session, tenant_id)
                row = await conversations_repo.resolve_conversation(
                    session,
                    tenant_id=tenant_id,
                    channel_id=channel_id,
                    sender_id=sender_id,
                    assistant_id=assistant_id,
                )
                await session.commit()
                return _to_conversation_ref(row)
        except SQLAlchemyError as exc:
            raise ConversationResolutionError("conversation resolution failed") from exc

    async def is_quota_blocked(self, conversation_id: UUID) -> bool:
        try:
            async with self._session_factory() as session:
                return await conversations_repo.is_quota_blocked(session, conversation_id)
        except SQLAlchemyError as exc:
            raise QuotaLookupError("quota flag lookup failed") from exc

    async def set_quota_blocked(self, conversation_id: UUID, reason: str) -> None:
        try:
            async with self._session_factory() as session:
                await conversations_repo.set_quota_blocked(session, conversation_id, reason=reason)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("quota flag update failed") from exc

    async def clear_quota_blocked(self, tenant_id: str | None = None) -> int:
        try:
            async with self._session_factory() as session:
                cleared = await conversations_repo.clear_quota_blocked(session, tenant_id=tenant_id)
                await session.commit()
                return cleared
        except SQLAlchemyError as exc:
            raise PersistenceError("quota flag reset failed") from exc

    async def touch_last_message(self, conversation_id: UUID) -> None:
        try:
            async with self._session_factory() as session:
                await conversations_repo.touch_last_message(session, conversation_id)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("conversation touch failed") from exc


class SqlMessageStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def append(self, conversation_id: UUID, tenant_id: str, draft: MessageDraft) -> MessageRecord:
        try:
            async with self._session_factory() as session:
                row = await messages_repo.append_message(
                    session,
                    conversation_id=conversation_id,
                    tenant_id=tenant_id,
                    direction=draft.direction,
                    content=draft.content,
                    status=draft.status,
                    external_id=draft.external_id,
                    metadata=draft.metadata,
                    llm_skipped=draft.llm_skipped,
                )
                await session.commit()
                return _to_message_record(row)
        except SQLAlchemyError as exc:
            raise PersistenceError("message append failed") from exc

    async def find_by_external_id(self, conversation_id: UUID, external_id: str) -> MessageRecord | None:
        try:
            async with self._session_factory() as session:
                row = await messages_repo.get_by_external_id(
                    session, conversation_id=conversation_id, external_id=external_id
                )
                return _to_message_record(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError("message lookup failed") from exc

    async def recent(
        self, conversation_id: UUID, limit: int, *, exclude_external_id: str | None = None
    ) -> list[MessageRecord]:
        try:
            async with self._session_factory() as session:
                rows = await messages_repo.list_recent_messages(
                    session,
                    conversation_id=conversation_id,
                    limit=limit,
                    exclude_external_id=exclude_external_id,
                )
                return [_to_message_record(row) for row in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError("history lookup failed") from exc

    async def claim_for_delivery(self, message_id: UUID) -> bool:
        try:
            async with self._session_factory() as session:
                claimed = await messages_repo.claim_for_delivery(session, message_id)
                await session.commit()
                return claimed
        except SQLAlchemyError as exc:
            raise PersistenceError("message delivery claim failed") from exc

    async def release_delivery(self, message_id: UUID) -> None:
        try:
            async with self._session_factory() as session:
                await messages_repo.release_delivery(session, message_id)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("message delivery release failed") from exc

    async def mark_delivered(self, message_id: UUID, delivery_id: str | None) -> bool:
        try:
            async with self._session_factory() as session:
                changed = await messages_repo.mark_delivered(session, message_id, delivery_id=delivery_id)
                await session.commit()
                return changed
        except SQLAlchemyError as exc:
            raise PersistenceError("message delivery update failed") from exc


class SqlLimitsProvider:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get_limits(self, tenant_id: str) -> TenantLimits:
        try:
            async with self._session_factory() as session:
                row = await plans_repo.get_plan_limit(session, tenant_id)
        except SQLAlchemyError as exc:
            raise QuotaLookupError("plan limits lookup failed") from exc
        return build_tenant_limits(row)


class SqlUsageStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def messages_on(self, tenant_id: str, usage_date: date) -> int:
        try:
            async with self._session_factory() as session:
                row = await usage_repo.get_daily_usage(session, tenant_id, usage_date)
        except SQLAlchemyError as exc:
            raise QuotaLookupError("daily usage lookup failed") from exc
        return int(row.messages_count) if row is not None else 0

    async def rag_queries_on(self, tenant_id: str, usage_date: date) -> int:
        try:
            async with self._session_factory() as session:
                row = await usage_repo.get_daily_usage(session, tenant_id, usage_date)
        except SQLAlchemyError as exc:
            raise QuotaLookupError("daily usage lookup failed") from exc
        return int(row.rag_queries_count) if row is not None else 0

    async def increment(
        self,
        tenant_id: str,
        usage_date: date,
        *,
        messages: int = 0,
        tokens_in: int = 0,
        tokens_out: int = 0,
        rag_queries: int = 0,
    ) -> None:
        try:
            async with self._session_factory() as session:
                await usage_repo.increment_daily_usage(
                    session,
                    tenant_id=tenant_id,
                    usage_date=usage_date,
                    messages=messages,
                    tokens_in=tokens_in,
                    tokens_out=tokens_out,
                    rag_queries=rag_queries,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("usage increment failed") from exc
