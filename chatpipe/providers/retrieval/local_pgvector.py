from __future__ import annotations

from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatpipe.core.config import EMBED_DIM
from chatpipe.core.errors import RetrievalError
from chatpipe.persistence.guards import require_tenant_id
from chatpipe.persistence.repos.chunks import search_chunks
from chatpipe.providers.embeddings import HashEmbedder, TextEmbedder
from chatpipe.providers.retrieval.base import KnowledgeScope, RetrievedFragment


class PgVectorKnowledgeStore:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        embedder: TextEmbedder | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._embedder = embedder or HashEmbedder()

    async def search(
        self,
        scope: KnowledgeScope,
        query: str,
        *,
        threshold: float,
        limit: int,
    ) -> list[RetrievedFragment]:
        tenant_id = require_tenant_id(scope.tenant_id)
        query_embedding = await self._embedder.embed_query(query)
        if len(query_embedding) != EMBED_DIM:
            # Fail fast if the embedding dimension doesn't match the schema.
            raise RetrievalError("query embedding dimension mismatch")

        try:
            async with self._session_factory() as session:
                rows = await search_chunks(
                    session,
                    tenant_id=tenant_id,
                    assistant_id=scope.assistant_id,
                    query_embedding=query_embedding,
                    threshold=threshold,
                    limit=limit,
                )
        except SQLAlchemyError as exc:
            raise RetrievalError("pgvector query failed") from exc

        fragments: list[RetrievedFragment] = []
        for chunk, document_name, distance in rows:
            score = max(0.0, min(1.0, 1.0 - distance))
            fragments.append(
                RetrievedFragment(
                    fragment_id=int(chunk.id),
                    source_document_id=chunk.document_id,
                    source_document_name=document_name,
                    content=chunk.content,
                    score=score,
                    token_count=int(chunk.token_count or 0),
                )
            )
        return fragments
