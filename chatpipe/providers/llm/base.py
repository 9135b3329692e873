from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class GenerationRequest:
    tenant_id: str
    assistant_id: str | None
    # Chat-style turns, oldest first, ending with the current user message.
    messages: list[dict[str, str]]
    # Pre-formatted knowledge block from context assembly; empty when retrieval found nothing.
    context: str = ""
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationResult:
    text: str
    tokens_in: int = 0
    tokens_out: int = 0
    model: str | None = None


class ReplyGenerator(Protocol):
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        ...


def render_messages(request: GenerationRequest) -> list[dict[str, str]]:
    """Return the request turns with the knowledge context appended to the system turn.

    A system turn is inserted first when the request carries none.
    """
    messages = [{"role": msg.get("role", "user"), "content": msg.get("content", "")} for msg in request.messages]
    if not request.context:
        return messages
    block = f"Context:\n{request.context}"
    for msg in messages:
        if msg["role"] == "system":
            msg["content"] = f"{msg['content']}\n\n{block}" if msg["content"] else block
            return messages
    return [{"role": "system", "content": block}, *messages]
