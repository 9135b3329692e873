from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatpipe.core.errors import PersistenceError
from chatpipe.domain.models import Message


async def append_message(
    session: AsyncSession,
    *,
    conversation_id: UUID,
    tenant_id: str,
    direction: str,
    content: str,
    status: str,
    external_id: str,
    metadata: dict[str, Any] | None = None,
    llm_skipped: bool = False,
) -> Message:
    # Idempotent append: a second call with the same external id returns the first row.
    stmt = insert(Message).values(
        conversation_id=conversation_id,
        tenant_id=tenant_id,
        direction=direction,
        content=content,
        status=status,
        external_id=external_id,
        metadata_json=metadata or {},
        llm_skipped=llm_skipped,
    )
    stmt = stmt.on_conflict_do_nothing(constraint="uq_messages_external")
    await session.execute(stmt)

    message = await get_by_external_id(session, conversation_id=conversation_id, external_id=external_id)
    if message is None:
        raise PersistenceError("message insert failed unexpectedly")
    return message


async def get_by_external_id(
    session: AsyncSession, *, conversation_id: UUID, external_id: str
) -> Message | None:
    result = await session.execute(
        select(Message).where(
            Message.conversation_id == conversation_id,
            Message.external_id == external_id,
        )
    )
    return result.scalar_one_or_none()


async def list_recent_messages(
    session: AsyncSession,
    *,
    conversation_id: UUID,
    limit: int,
    exclude_external_id: str | None = None,
) -> list[Message]:
    # Newest first from the index, then flipped so callers get oldest first.
    stmt = select(Message).where(Message.conversation_id == conversation_id)
    if exclude_external_id is not None:
        stmt = stmt.where(Message.external_id != exclude_external_id)
    stmt = stmt.order_by(Message.created_at.desc(), Message.id.desc()).limit(max(0, int(limit)))
    result = await session.execute(stmt)
    rows = list(result.scalars().all())
    rows.reverse()
    return rows


STATUS_PENDING = "pending"
STATUS_SENDING = "sending"
STATUS_DELIVERED = "delivered"


async def claim_for_delivery(session: AsyncSession, message_id: UUID) -> bool:
    # Compare-and-set pending -> sending; exactly one caller wins the send.
    result = await session.execute(
        update(Message)
        .where(Message.id == message_id, Message.status == STATUS_PENDING)
        .values(status=STATUS_SENDING)
    )
    return int(result.rowcount or 0) == 1


async def release_delivery(session: AsyncSession, message_id: UUID) -> None:
    # Hand the send back after a failed attempt so the retry can claim it.
    await session.execute(
        update(Message)
        .where(Message.id == message_id, Message.status == STATUS_SENDING)
        .values(status=STATUS_PENDING)
    )


async def mark_delivered(session: AsyncSession, message_id: UUID, *, delivery_id: str | None) -> bool:
    # Returns False when the row was already delivered so stats are counted once.
    result = await session.execute(
        update(Message)
        .where(Message.id == message_id, Message.status != STATUS_DELIVERED)
        .values(status=STATUS_DELIVERED, delivery_id=delivery_id)
    )
    return int(result.rowcount or 0) == 1
