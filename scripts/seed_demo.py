from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass

from sqlalchemy import select

from chatpipe.core.config import EMBED_DIM
from chatpipe.domain.models import Assistant, Document, DocumentChunk, PlanLimit
from chatpipe.persistence.db import SessionLocal
from chatpipe.providers.embeddings import TextEmbedder, get_text_embedder
from chatpipe.services.context import estimate_tokens


DEMO_TENANT_ID = "t1"
DEMO_PLAN_CODE = "starter"
DEMO_ASSISTANT_ID = "t1-support"


@dataclass(frozen=True)
class DemoDocument:
    document_id: str
    name: str
    # None means the document is shared by every assistant of the tenant.
    assistant_id: str | None
    sections: tuple[str, ...]


def build_demo_documents() -> tuple[DemoDocument, ...]:
    return (
        DemoDocument(
            document_id="demo-doc-hours",
            name="Horaires et contact",
            assistant_id=None,
            sections=(
                "La boutique est ouverte du lundi au samedi de 9h à 19h.",
                "Le service client répond sur WhatsApp en moins de deux heures.",
            ),
        ),
        DemoDocument(
            document_id="demo-doc-delivery",
            name="Livraison",
            assistant_id=None,
            sections=(
                "La livraison est gratuite à partir de 300 dirhams d'achat.",
                "Les commandes passées avant midi sont expédiées le jour même.",
                "Les retours sont acceptés sous quatorze jours avec le ticket.",
            ),
        ),
    )


async def build_demo_chunks(embedder: TextEmbedder) -> list[DocumentChunk]:
    chunks: list[DocumentChunk] = []
    for document in build_demo_documents():
        embeddings = await embedder.embed_documents(list(document.sections))
        for index, (text, embedding) in enumerate(zip(document.sections, embeddings)):
            if len(embedding) != EMBED_DIM:
                raise ValueError(f"Embedding dimension mismatch; expected {EMBED_DIM}.")
            chunks.append(
                DocumentChunk(
                    tenant_id=DEMO_TENANT_ID,
                    document_id=document.document_id,
                    assistant_id=document.assistant_id,
                    chunk_index=index,
                    content=text,
                    token_count=estimate_tokens(text),
                    embedding=embedding,
                )
            )
    return chunks


async def seed_demo() -> int:
    async with SessionLocal() as session:
        if await session.get(PlanLimit, DEMO_TENANT_ID) is None:
            session.add(PlanLimit(tenant_id=DEMO_TENANT_ID, plan_code=DEMO_PLAN_CODE))
        if await session.get(Assistant, DEMO_ASSISTANT_ID) is None:
            # New conversations of the tenant are bound to this assistant.
            session.add(
                Assistant(
                    id=DEMO_ASSISTANT_ID,
                    tenant_id=DEMO_TENANT_ID,
                    name="Support",
                    is_default=True,
                    is_active=True,
                )
            )

        existing = await session.execute(
            select(Document.id).where(Document.tenant_id == DEMO_TENANT_ID).limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            await session.commit()
            print("Demo tenant already seeded; skipping.")
            return 0

        for document in build_demo_documents():
            session.add(
                Document(
                    id=document.document_id,
                    tenant_id=DEMO_TENANT_ID,
                    name=document.name,
                    status="indexed",
                )
            )
        await session.flush()
        chunks = await build_demo_chunks(get_text_embedder())
        session.add_all(chunks)
        await session.commit()
        print(f"Seeded demo tenant with {len(chunks)} chunks.")
        return 0


def main() -> int:
    # Exit non-zero so CI/dev scripts can detect setup failures.
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
