from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from chatpipe.persistence.repos.messages import claim_for_delivery, mark_delivered, release_delivery


class _Result:
    def __init__(self, rowcount: int) -> None:
        self.rowcount = rowcount


class _Session:
    def __init__(self, rowcount: int = 1) -> None:
        self.rowcount = rowcount
        self.statements = []

    async def execute(self, stmt):
        self.statements.append(stmt)
        return _Result(self.rowcount)


def _sql(stmt) -> tuple[str, dict]:
    compiled = stmt.compile(dialect=postgresql.dialect())
    return str(compiled), compiled.params


@pytest.mark.asyncio
async def test_claim_is_a_pending_to_sending_compare_and_set() -> None:
    session = _Session(rowcount=1)

    assert await claim_for_delivery(session, uuid4()) is True

    sql, params = _sql(session.statements[0])
    assert "messages.status = %(status_1)s" in sql
    assert params["status_1"] == "pending"
    assert params["status"] == "sending"


@pytest.mark.asyncio
async def test_claim_lost_when_no_row_matches() -> None:
    assert await claim_for_delivery(_Session(rowcount=0), uuid4()) is False


@pytest.mark.asyncio
async def test_release_only_touches_sending_rows() -> None:
    session = _Session()

    await release_delivery(session, uuid4())

    sql, params = _sql(session.statements[0])
    assert params["status_1"] == "sending"
    assert params["status"] == "pending"


@pytest.mark.asyncio
async def test_mark_delivered_skips_rows_already_delivered() -> None:
    session = _Session(rowcount=0)

    changed = await mark_delivered(session, uuid4(), delivery_id="wamid.out.1")

    sql, params = _sql(session.statements[0])
    assert changed is False
    assert "messages.status != %(status_1)s" in sql
    assert params["status_1"] == "delivered"
    assert params["delivery_id"] == "wamid.out.1"
