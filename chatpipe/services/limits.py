from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from chatpipe.core.config import get_settings
from chatpipe.domain.models import PlanLimit


DEFAULT_PLAN_CODE = "starter"

# Per-plan daily message and retrieval allowances; -1 is unlimited.
PLAN_DEFAULTS: dict[str, dict[str, Any]] = {
    "starter": {"max_daily_messages": 500, "max_daily_rag_queries": 100, "retrieval_enabled": True},
    "pro": {"max_daily_messages": 5000, "max_daily_rag_queries": 1000, "retrieval_enabled": True},
    "business": {"max_daily_messages": 25000, "max_daily_rag_queries": 5000, "retrieval_enabled": True},
    "enterprise": {"max_daily_messages": -1, "max_daily_rag_queries": -1, "retrieval_enabled": True},
}


@dataclass(frozen=True)
class TenantLimits:
    plan_code: str
    max_daily_messages: int | None
    retrieval_enabled: bool
    threshold: float
    max_results: int
    rate_limit: int
    rate_window_seconds: int
    max_daily_rag_queries: int | None = None

    @property
    def daily_messages_unlimited(self) -> bool:
        return self.max_daily_messages is None or self.max_daily_messages <= 0

    @property
    def daily_rag_queries_unlimited(self) -> bool:
        return self.max_daily_rag_queries is None or self.max_daily_rag_queries <= 0


def plan_defaults(plan_code: str | None) -> dict[str, Any]:
    # Unknown plan codes fall back to the starter allowance.
    return PLAN_DEFAULTS.get((plan_code or DEFAULT_PLAN_CODE).lower(), PLAN_DEFAULTS[DEFAULT_PLAN_CODE])


def build_tenant_limits(row: PlanLimit | None) -> TenantLimits:
    # Merge per-tenant overrides over the plan defaults and settings.
    settings = get_settings()
    plan_code = (row.plan_code if row is not None else None) or DEFAULT_PLAN_CODE
    defaults = plan_defaults(plan_code)

    def _pick(attr: str, fallback: Any) -> Any:
        value = getattr(row, attr, None) if row is not None else None
        return fallback if value is None else value

    return TenantLimits(
        plan_code=plan_code,
        max_daily_messages=_pick("max_daily_messages", defaults["max_daily_messages"]),
        retrieval_enabled=bool(_pick("retrieval_enabled", defaults["retrieval_enabled"])),
        threshold=float(_pick("rag_threshold", settings.rag_default_threshold)),
        max_results=int(_pick("rag_max_results", settings.rag_default_max_results)),
        rate_limit=int(_pick("rate_limit", settings.rl_default_limit)),
        rate_window_seconds=int(_pick("rate_window_seconds", settings.rl_default_window_s)),
        max_daily_rag_queries=_pick("max_daily_rag_queries", defaults["max_daily_rag_queries"]),
    )
