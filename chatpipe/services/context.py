from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field

from chatpipe.core.config import get_settings
from chatpipe.core.errors import RetrievalError, RetrievalTimeoutError
from chatpipe.persistence.guards import require_tenant_id
from chatpipe.providers.retrieval.base import KnowledgeScope, KnowledgeStore, RetrievedFragment
from chatpipe.services.resilience import timed_call
from chatpipe.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


CONTEXT_FORMAT_SIMPLE = "simple"
CONTEXT_FORMAT_STRUCTURED = "structured"
CONTEXT_FORMAT_CITATIONS = "citations"


@dataclass(frozen=True)
class AssistantConfig:
    retrieval_enabled: bool
    threshold: float
    max_results: int
    assistant_id: str | None = None
    history_turns: int = 10
    context_format: str = CONTEXT_FORMAT_SIMPLE
    include_scores: bool = False


@dataclass(frozen=True)
class AssembledContext:
    fragments: list[RetrievedFragment] = field(default_factory=list)
    formatted_context: str = ""
    history: list[dict[str, str]] = field(default_factory=list)
    # True when the knowledge store was actually queried.
    retrieval_ran: bool = False
    total_tokens: int = 0
    # Distinct source documents of the kept fragments, in fragment order.
    documents_used: list[str] = field(default_factory=list)
    document_names: list[str] = field(default_factory=list)


def estimate_tokens(text: str) -> int:
    # Rough 4-characters-per-token estimate for fragments stored without a count.
    return max(1, math.ceil(len(text) / 4)) if text else 0


def rank_fragments(
    fragments: list[RetrievedFragment], *, threshold: float, max_results: int
) -> list[RetrievedFragment]:
    # Threshold, score descending, insertion order as tie-break, then cap.
    kept = [fragment for fragment in fragments if fragment.score >= threshold]
    kept.sort(key=lambda fragment: (-fragment.score, fragment.fragment_id))
    return kept[: max(0, int(max_results))]


def fit_token_budget(fragments: list[RetrievedFragment], max_tokens: int) -> tuple[list[RetrievedFragment], int]:
    # The first fragment is always kept, even when it alone exceeds the budget.
    selected: list[RetrievedFragment] = []
    total = 0
    for fragment in fragments:
        tokens = fragment.token_count or estimate_tokens(fragment.content)
        if total + tokens > max_tokens:
            if not selected:
                selected.append(fragment)
                total += tokens
            break
        selected.append(fragment)
        total += tokens
    return selected, total


def unique_in_order(values: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def format_context(
    fragments: list[RetrievedFragment],
    *,
    style: str = CONTEXT_FORMAT_SIMPLE,
    include_document_name: bool = True,
    include_score: bool = False,
) -> str:
    """Render kept fragments as the knowledge block of the prompt.

    ``simple`` tags each passage with its source, ``structured`` adds a header
    and numbered passages, ``citations`` numbers passages for inline references.
    Unknown styles render as ``simple``.
    """
    if not fragments:
        return ""

    lines: list[str] = []
    if style == CONTEXT_FORMAT_STRUCTURED:
        names = unique_in_order([fragment.source_document_name for fragment in fragments])
        lines.extend(
            [
                "=== KNOWLEDGE CONTEXT ===",
                f"Documents used: {', '.join(names)}",
                f"Passages: {len(fragments)}",
                "",
            ]
        )
        for idx, fragment in enumerate(fragments, start=1):
            lines.append(f"--- Passage {idx} ---")
            if include_document_name:
                lines.append(f"Document: {fragment.source_document_name}")
            if include_score:
                lines.append(f"Relevance: {fragment.score * 100:.0f}%")
            lines.extend(["", fragment.content, ""])
    elif style == CONTEXT_FORMAT_CITATIONS:
        lines.extend(["Document references:", ""])
        for idx, fragment in enumerate(fragments, start=1):
            lines.append(f"[{idx}] {fragment.content}")
            if include_document_name:
                lines.append(f"    Source: {fragment.source_document_name}")
            lines.append("")
    else:
        for fragment in fragments:
            if include_document_name:
                lines.append(f"[Source: {fragment.source_document_name}]")
            lines.extend([fragment.content, ""])
    return "\n".join(lines).strip()


def truncate_history(history: list[dict[str, str]], turns: int) -> list[dict[str, str]]:
    # Oldest first; drop from the front when over K.
    if turns <= 0:
        return []
    return list(history[-turns:])


class ContextAssembler:
    def __init__(
        self,
        store: KnowledgeStore,
        *,
        max_context_tokens: int | None = None,
        timeout_ms: int | None = None,
        degrade_on_error: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._max_context_tokens = (
            max_context_tokens if max_context_tokens is not None else settings.rag_max_context_tokens
        )
        self._timeout_s = (timeout_ms if timeout_ms is not None else settings.retrieval_timeout_ms) / 1000.0
        self._degrade_on_error = (
            degrade_on_error if degrade_on_error is not None else settings.retrieval_degrade_on_error
        )

    async def assemble(
        self,
        tenant_id: str,
        config: AssistantConfig,
        query: str,
        history: list[dict[str, str]],
    ) -> AssembledContext:
        tenant_id = require_tenant_id(tenant_id)
        trimmed_history = truncate_history(history, config.history_turns)
        if not config.retrieval_enabled or not query or not query.strip():
            return AssembledContext(history=trimmed_history)

        scope = KnowledgeScope(tenant_id=tenant_id, assistant_id=config.assistant_id)
        try:
            raw = await timed_call("retrieval", lambda: self._search(scope, query, config))
        except RetrievalError as exc:
            if not self._degrade_on_error:
                raise
            increment_counter("guard_degraded_total.retrieval")
            logger.warning("retrieval_degraded tenant_id=%s error=%s", tenant_id, exc)
            return AssembledContext(history=trimmed_history)

        ranked = rank_fragments(raw, threshold=config.threshold, max_results=config.max_results)
        selected, total_tokens = fit_token_budget(ranked, self._max_context_tokens)
        logger.info(
            "context_assembled tenant_id=%s assistant_id=%s found=%s kept=%s tokens=%s",
            tenant_id,
            config.assistant_id,
            len(raw),
            len(selected),
            total_tokens,
        )
        return AssembledContext(
            fragments=selected,
            formatted_context=format_context(
                selected, style=config.context_format, include_score=config.include_scores
            ),
            history=trimmed_history,
            retrieval_ran=True,
            total_tokens=total_tokens,
            documents_used=unique_in_order([fragment.source_document_id for fragment in selected]),
            document_names=unique_in_order([fragment.source_document_name for fragment in selected]),
        )

    async def _search(
        self, scope: KnowledgeScope, query: str, config: AssistantConfig
    ) -> list[RetrievedFragment]:
        try:
            return await asyncio.wait_for(
                self._store.search(scope, query, threshold=config.threshold, limit=config.max_results),
                timeout=self._timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise RetrievalTimeoutError("similarity search timed out") from exc
