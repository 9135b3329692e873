from __future__ import annotations

import pytest
from sqlalchemy.dialects import postgresql

from chatpipe.persistence.guards import TenantPredicateError
from chatpipe.persistence.repos.assistants import build_default_assistant_statement


def test_default_assistant_lookup_is_tenant_scoped_and_active_only() -> None:
    compiled = build_default_assistant_statement("T1").compile(dialect=postgresql.dialect())
    sql = str(compiled)

    assert "assistants.tenant_id = %(tenant_id_1)s" in sql
    assert compiled.params["tenant_id_1"] == "T1"
    assert "assistants.is_default IS true" in sql
    assert "assistants.is_active IS true" in sql
    assert "ORDER BY assistants.created_at ASC, assistants.id ASC" in sql
    assert "LIMIT" in sql


def test_default_assistant_lookup_requires_tenant() -> None:
    with pytest.raises(TenantPredicateError):
        build_default_assistant_statement("")
