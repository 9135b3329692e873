from __future__ import annotations

from chatpipe.providers.llm.base import GenerationRequest, GenerationResult, render_messages


class FakeReplyGenerator:
    def __init__(self, response: str = "This is a fake response.") -> None:
        # Deterministic response keeps tests stable without external calls.
        self._response = response

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        prompt_words = sum(len(msg["content"].split()) for msg in render_messages(request))
        return GenerationResult(
            text=self._response,
            tokens_in=prompt_words,
            tokens_out=len(self._response.split()),
            model="fake",
        )
