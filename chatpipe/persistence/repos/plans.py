from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatpipe.domain.models import PlanLimit
from chatpipe.persistence.guards import tenant_predicate


async def get_plan_limit(session: AsyncSession, tenant_id: str) -> PlanLimit | None:
    # Fetch the tenant's plan assignment and overrides, if configured.
    result = await session.execute(select(PlanLimit).where(tenant_predicate(PlanLimit, tenant_id)))
    return result.scalar_one_or_none()
