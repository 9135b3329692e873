from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal
from uuid import UUID


PipelineStage = Literal[
    "received",
    "dedup_check",
    "dropped",
    "rate_check",
    "notify_if_needed",
    "persist_inbound",
    "quota_check",
    "persist_fallback",
    "deliver_fallback",
    "assemble_context",
    "generate_reply",
    "persist_outbound",
    "deliver_reply",
    "update_stats",
    "complete",
]

PipelineOutcome = Literal["completed", "duplicate", "rate_limited", "quota_blocked"]

STAGE_RECEIVED: PipelineStage = "received"
STAGE_DEDUP_CHECK: PipelineStage = "dedup_check"
STAGE_DROPPED: PipelineStage = "dropped"
STAGE_RATE_CHECK: PipelineStage = "rate_check"
STAGE_NOTIFY_IF_NEEDED: PipelineStage = "notify_if_needed"
STAGE_PERSIST_INBOUND: PipelineStage = "persist_inbound"
STAGE_QUOTA_CHECK: PipelineStage = "quota_check"
STAGE_PERSIST_FALLBACK: PipelineStage = "persist_fallback"
STAGE_DELIVER_FALLBACK: PipelineStage = "deliver_fallback"
STAGE_ASSEMBLE_CONTEXT: PipelineStage = "assemble_context"
STAGE_GENERATE_REPLY: PipelineStage = "generate_reply"
STAGE_PERSIST_OUTBOUND: PipelineStage = "persist_outbound"
STAGE_DELIVER_REPLY: PipelineStage = "deliver_reply"
STAGE_UPDATE_STATS: PipelineStage = "update_stats"
STAGE_COMPLETE: PipelineStage = "complete"

OUTCOME_COMPLETED: PipelineOutcome = "completed"
OUTCOME_DUPLICATE: PipelineOutcome = "duplicate"
OUTCOME_RATE_LIMITED: PipelineOutcome = "rate_limited"
OUTCOME_QUOTA_BLOCKED: PipelineOutcome = "quota_blocked"


@dataclass
class PipelineResult:
    outcome: PipelineOutcome | None = None
    stages: list[PipelineStage] = field(default_factory=list)
    conversation_id: UUID | None = None
    reply: str | None = None
    delivery_id: str | None = None
    reason: str | None = None

    def visit(self, stage: PipelineStage) -> None:
        self.stages.append(stage)
