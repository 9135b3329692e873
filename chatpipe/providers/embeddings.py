from __future__ import annotations

import hashlib
import logging
import math
import re
from typing import Protocol

from chatpipe.core.config import EMBED_DIM, get_settings
from chatpipe.core.errors import EmbeddingError, ProviderConfigError

logger = logging.getLogger(__name__)

# Unicode word characters so French and Arabic queries tokenize too.
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

# Vertex text embedding limits.
VERTEX_MAX_TEXT_CHARS = 8192
VERTEX_MAX_BATCH = 250
TASK_RETRIEVAL_QUERY = "RETRIEVAL_QUERY"
TASK_RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"


def _hash_token(token: str) -> tuple[int, float]:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    idx = int(digest[:8], 16) % EMBED_DIM
    sign = 1.0 if int(digest[8:12], 16) % 2 == 0 else -1.0
    magnitude = (int(digest[12:20], 16) % 1000) / 1000.0
    return idx, sign * (0.2 + magnitude)


def embed_text(text: str) -> list[float]:
    # Deterministic local embedding; fixed size to match the document_chunks column.
    vector = [0.0] * EMBED_DIM
    for token in _TOKEN_RE.findall(text.lower()):
        idx, value = _hash_token(token)
        vector[idx] += value

    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


class TextEmbedder(Protocol):
    async def embed_query(self, text: str) -> list[float]:
        ...

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        ...


class HashEmbedder:
    """Offline embedder for local development and tests."""

    async def embed_query(self, text: str) -> list[float]:
        return embed_text(text)

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [embed_text(text) for text in texts]


class VertexTextEmbedder:
    """Vertex AI text embeddings, reduced to the schema dimension."""

    def __init__(self) -> None:
        self._settings = get_settings()
        self._model = None

    def _get_model(self):
        if self._model is not None:
            return self._model
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        model_name = self._settings.vertex_embedding_model
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if not model_name:
            missing.append("VERTEX_EMBEDDING_MODEL")
        if missing:
            raise ProviderConfigError(f"Vertex config missing: set {', '.join(missing)} in .env.")
        try:
            from vertexai import init
            from vertexai.language_models import TextEmbeddingModel
        except ImportError as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError("Vertex AI SDK not available. Install google-cloud-aiplatform.") from exc
        init(project=project, location=location)
        self._model = TextEmbeddingModel.from_pretrained(model_name)
        return self._model

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self._embed([text], TASK_RETRIEVAL_QUERY)
        return vectors[0]

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), VERTEX_MAX_BATCH):
            vectors.extend(await self._embed(texts[start : start + VERTEX_MAX_BATCH], TASK_RETRIEVAL_DOCUMENT))
        return vectors

    async def _embed(self, texts: list[str], task_type: str) -> list[list[float]]:
        if any(not text or not text.strip() for text in texts):
            raise EmbeddingError("cannot embed empty text")
        model = self._get_model()
        from google.api_core.exceptions import GoogleAPICallError
        from vertexai.language_models import TextEmbeddingInput

        inputs = [TextEmbeddingInput(text[:VERTEX_MAX_TEXT_CHARS], task_type) for text in texts]
        try:
            embeddings = await model.get_embeddings_async(inputs, output_dimensionality=EMBED_DIM)
        except GoogleAPICallError as exc:
            logger.error("vertex_embedding_error task_type=%s count=%s", task_type, len(texts))
            raise EmbeddingError("Vertex embedding request failed.") from exc

        vectors = [list(embedding.values) for embedding in embeddings]
        if len(vectors) != len(texts) or any(len(vector) != EMBED_DIM for vector in vectors):
            raise EmbeddingError("Vertex returned embeddings of an unexpected shape.")
        return vectors


def get_text_embedder() -> TextEmbedder:
    provider = (get_settings().embedding_provider or "local").lower()
    if provider == "vertex":
        return VertexTextEmbedder()
    return HashEmbedder()
