from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class KnowledgeScope:
    # Every store call carries the tenant; assistant narrows within it.
    tenant_id: str
    assistant_id: str | None = None


@dataclass(frozen=True)
class RetrievedFragment:
    # fragment_id is the chunk sequence id, so it also encodes insertion order.
    fragment_id: int
    source_document_id: str
    source_document_name: str
    content: str
    score: float
    token_count: int = 0


class KnowledgeStore(Protocol):
    async def search(
        self,
        scope: KnowledgeScope,
        query: str,
        *,
        threshold: float,
        limit: int,
    ) -> list[RetrievedFragment]:
        ...
