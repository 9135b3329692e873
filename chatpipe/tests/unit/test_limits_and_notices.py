from __future__ import annotations

from chatpipe.core.logging import mask_sender
from chatpipe.domain.models import PlanLimit
from chatpipe.services.limits import build_tenant_limits, plan_defaults
from chatpipe.services.notices import quota_exceeded_notice, rate_limit_notice


def test_missing_row_uses_starter_defaults() -> None:
    limits = build_tenant_limits(None)

    assert limits.plan_code == "starter"
    assert limits.max_daily_messages == 500
    assert limits.retrieval_enabled is True
    assert not limits.daily_messages_unlimited
    assert limits.max_daily_rag_queries == 100
    assert not limits.daily_rag_queries_unlimited


def test_row_overrides_win_over_plan_defaults() -> None:
    row = PlanLimit(tenant_id="T1", plan_code="pro", max_daily_messages=50, rag_threshold=0.6, rate_limit=3)

    limits = build_tenant_limits(row)

    assert limits.plan_code == "pro"
    assert limits.max_daily_messages == 50
    assert limits.threshold == 0.6
    assert limits.rate_limit == 3


def test_enterprise_plan_is_unlimited() -> None:
    limits = build_tenant_limits(PlanLimit(tenant_id="T1", plan_code="enterprise"))

    assert limits.daily_messages_unlimited
    assert limits.daily_rag_queries_unlimited


def test_rag_query_override_wins_over_plan_default() -> None:
    limits = build_tenant_limits(PlanLimit(tenant_id="T1", plan_code="business", max_daily_rag_queries=7))

    assert limits.max_daily_rag_queries == 7


def test_unknown_plan_falls_back_to_starter() -> None:
    assert plan_defaults("platinum") == plan_defaults("starter")


def test_notices_follow_locale_with_french_fallback() -> None:
    assert quota_exceeded_notice("ar-ma") != quota_exceeded_notice("fr")
    assert rate_limit_notice("xx") == rate_limit_notice("fr")
    assert "limite" in quota_exceeded_notice("FR")


def test_mask_sender_keeps_only_tail() -> None:
    assert mask_sender("+212600000001") == "*********0001"
    assert mask_sender("123") == "****"
    assert mask_sender(None) == "<none>"
