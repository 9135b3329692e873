from __future__ import annotations

import math

import pytest

from chatpipe.core.config import EMBED_DIM, get_settings
from chatpipe.core.errors import EmbeddingError, ProviderConfigError
from chatpipe.providers.embeddings import (
    VERTEX_MAX_BATCH,
    HashEmbedder,
    VertexTextEmbedder,
    embed_text,
    get_text_embedder,
)


def test_embedding_is_deterministic_and_normalized() -> None:
    first = embed_text("Horaires d'ouverture du magasin")
    second = embed_text("horaires D'OUVERTURE du magasin")

    assert len(first) == EMBED_DIM
    assert first == second
    assert math.isclose(math.sqrt(sum(v * v for v in first)), 1.0, rel_tol=1e-9)


def test_arabic_text_embeds() -> None:
    assert any(embed_text("مواعيد العمل"))


def test_empty_text_is_zero_vector() -> None:
    assert not any(embed_text("   "))


@pytest.mark.asyncio
async def test_hash_embedder_matches_embed_text() -> None:
    embedder = HashEmbedder()

    query = await embedder.embed_query("Livraison gratuite")
    documents = await embedder.embed_documents(["Livraison gratuite", "Retours"])

    assert query == embed_text("Livraison gratuite")
    assert documents[0] == query
    assert len(documents) == 2


def test_factory_selects_provider(monkeypatch) -> None:
    monkeypatch.setenv("EMBEDDING_PROVIDER", "vertex")
    assert isinstance(get_text_embedder(), VertexTextEmbedder)

    monkeypatch.setenv("EMBEDDING_PROVIDER", "local")
    get_settings.cache_clear()
    assert isinstance(get_text_embedder(), HashEmbedder)


@pytest.mark.asyncio
async def test_vertex_embedder_without_project_is_config_error(monkeypatch) -> None:
    monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
    monkeypatch.delenv("GOOGLE_CLOUD_LOCATION", raising=False)

    with pytest.raises(ProviderConfigError):
        await VertexTextEmbedder().embed_query("horaires")


@pytest.mark.asyncio
async def test_vertex_embedder_rejects_empty_text() -> None:
    with pytest.raises(EmbeddingError):
        await VertexTextEmbedder().embed_query("  ")


class _Embedding:
    def __init__(self, values: list[float]) -> None:
        self.values = values


class _RecordingModel:
    def __init__(self, dim: int = EMBED_DIM) -> None:
        self.dim = dim
        self.calls: list[tuple[list, int]] = []

    async def get_embeddings_async(self, inputs, output_dimensionality=None):
        self.calls.append((inputs, output_dimensionality))
        return [_Embedding([0.1] * self.dim) for _ in inputs]


@pytest.mark.asyncio
async def test_vertex_embedder_batches_documents_and_tags_task_type() -> None:
    embedder = VertexTextEmbedder()
    model = _RecordingModel()
    embedder._model = model

    vectors = await embedder.embed_documents([f"section {i}" for i in range(VERTEX_MAX_BATCH + 1)])
    query = await embedder.embed_query("x" * 9000)

    assert len(vectors) == VERTEX_MAX_BATCH + 1
    assert [len(inputs) for inputs, _ in model.calls] == [VERTEX_MAX_BATCH, 1, 1]
    assert all(dim == EMBED_DIM for _, dim in model.calls)
    assert model.calls[0][0][0].task_type == "RETRIEVAL_DOCUMENT"
    assert model.calls[-1][0][0].task_type == "RETRIEVAL_QUERY"
    assert len(model.calls[-1][0][0].text) == 8192
    assert len(query) == EMBED_DIM


@pytest.mark.asyncio
async def test_vertex_embedder_rejects_wrong_dimension() -> None:
    embedder = VertexTextEmbedder()
    embedder._model = _RecordingModel(dim=3)

    with pytest.raises(EmbeddingError):
        await embedder.embed_query("horaires")
