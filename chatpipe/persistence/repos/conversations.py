from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatpipe.core.errors import ConversationResolutionError
from chatpipe.domain.models import Conversation
from chatpipe.persistence.guards import tenant_predicate


async def resolve_conversation(
    session: AsyncSession,
    *,
    tenant_id: str,
    channel_id: str,
    sender_id: str,
    assistant_id: str | None = None,
) -> Conversation:
    # Race-safe insert: concurrent first-contact messages collapse onto the unique row.
    stmt = insert(Conversation).values(
        tenant_id=tenant_id,
        channel_id=channel_id,
        sender_id=sender_id,
        assistant_id=assistant_id,
        status="active",
    )
    stmt = stmt.on_conflict_do_nothing(constraint="uq_conversations_sender")
    await session.execute(stmt)

    result = await session.execute(
        select(Conversation).where(
            tenant_predicate(Conversation, tenant_id),
            Conversation.channel_id == channel_id,
            Conversation.sender_id == sender_id,
        )
    )
    conversation = result.scalar_one_or_none()
    if conversation is None:
        raise ConversationResolutionError("conversation insert failed unexpectedly")
    return conversation


async def is_quota_blocked(session: AsyncSession, conversation_id: str | UUID) -> bool:
    result = await session.execute(
        select(Conversation.quota_blocked).where(Conversation.id == _as_uuid(conversation_id))
    )
    return bool(result.scalar_one_or_none())


async def set_quota_blocked(session: AsyncSession, conversation_id: str | UUID, *, reason: str) -> None:
    # Only flip false -> true so the first blocking timestamp is preserved.
    await session.execute(
        update(Conversation)
        .where(Conversation.id == _as_uuid(conversation_id), Conversation.quota_blocked.is_(False))
        .values(quota_blocked=True, quota_blocked_at=_utc_now(), quota_blocked_reason=reason)
    )


async def clear_quota_blocked(session: AsyncSession, *, tenant_id: str | None = None) -> int:
    # Explicit reset event (plan change for one tenant, day rollover for all).
    stmt = (
        update(Conversation)
        .where(Conversation.quota_blocked.is_(True))
        .values(quota_blocked=False, quota_blocked_at=None, quota_blocked_reason=None)
    )
    if tenant_id is not None:
        stmt = stmt.where(tenant_predicate(Conversation, tenant_id))
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def touch_last_message(session: AsyncSession, conversation_id: str | UUID) -> None:
    await session.execute(
        update(Conversation)
        .where(Conversation.id == _as_uuid(conversation_id))
        .values(last_message_at=_utc_now())
    )


def _as_uuid(value: str | UUID) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
