from __future__ import annotations

from chatpipe.core.config import get_settings
from chatpipe.providers.llm.base import ReplyGenerator
from chatpipe.providers.llm.fake import FakeReplyGenerator
from chatpipe.providers.llm.gemini_vertex import GeminiVertexGenerator


def get_reply_generator() -> ReplyGenerator:
    provider = (get_settings().llm_provider or "vertex").lower()
    if provider == "fake":
        return FakeReplyGenerator()
    return GeminiVertexGenerator()
