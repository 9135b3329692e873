from __future__ import annotations

from sqlalchemy import Select, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatpipe.domain.models import Document, DocumentChunk
from chatpipe.persistence.guards import tenant_predicate


def build_similarity_statement(
    *,
    tenant_id: str,
    assistant_id: str | None,
    query_embedding: list[float],
    threshold: float,
    limit: int,
) -> Select:
    # Cosine distance from pgvector; lower is more similar, similarity = 1 - distance.
    distance_expr = DocumentChunk.embedding.cosine_distance(query_embedding)
    stmt = (
        select(DocumentChunk, Document.name, distance_expr.label("distance"))
        .join(Document, Document.id == DocumentChunk.document_id)
        # The tenant predicate is mandatory and never derived from the caller's scope object alone.
        .where(tenant_predicate(DocumentChunk, tenant_id))
        .where(Document.tenant_id == DocumentChunk.tenant_id)
        .where(Document.status == "indexed")
        .where(DocumentChunk.embedding.is_not(None))
        .where((1 - distance_expr) >= threshold)
    )
    if assistant_id is not None:
        stmt = stmt.where(
            or_(DocumentChunk.assistant_id.is_(None), DocumentChunk.assistant_id == assistant_id)
        )
    else:
        stmt = stmt.where(DocumentChunk.assistant_id.is_(None))
    # Secondary ordering keeps tie-breaking deterministic (insertion order).
    return stmt.order_by(distance_expr.asc(), DocumentChunk.id.asc()).limit(max(1, int(limit)))


async def search_chunks(
    session: AsyncSession,
    *,
    tenant_id: str,
    assistant_id: str | None,
    query_embedding: list[float],
    threshold: float,
    limit: int,
) -> list[tuple[DocumentChunk, str, float]]:
    stmt = build_similarity_statement(
        tenant_id=tenant_id,
        assistant_id=assistant_id,
        query_embedding=query_embedding,
        threshold=threshold,
        limit=limit,
    )
    result = await session.execute(stmt)
    return [(chunk, name, float(distance)) for chunk, name, distance in result.all()]
