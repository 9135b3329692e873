from __future__ import annotations

from chatpipe.pipeline.interfaces import MessageRecord


SYSTEM_PROMPT = (
    "You are a helpful customer assistant answering on a messaging channel. "
    "Keep replies short and answer in the user's language. "
    "When knowledge context is provided, answer from it; if the answer is not there, say you don't know."
)


def history_from_records(records: list[MessageRecord]) -> list[dict[str, str]]:
    # Inbound turns are the user, outbound the assistant; skipped-generation notices are not turns.
    history: list[dict[str, str]] = []
    for record in records:
        if record.llm_skipped:
            continue
        role = "user" if record.direction == "inbound" else "assistant"
        history.append({"role": role, "content": record.content})
    return history


def build_messages(history: list[dict[str, str]], user_message: str) -> list[dict[str, str]]:
    # Knowledge context travels separately on the request and is rendered by the generator.
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    messages.extend({"role": msg["role"], "content": msg["content"]} for msg in history)
    messages.append({"role": "user", "content": user_message})
    return messages
