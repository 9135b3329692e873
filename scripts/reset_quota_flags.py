from __future__ import annotations

import argparse
import asyncio

from chatpipe.core.logging import configure_logging
from chatpipe.persistence.db import SessionLocal
from chatpipe.persistence.stores import SqlConversationStore
from chatpipe.services.quota import reset_blocked_flags


async def reset(tenant_id: str | None) -> None:
    cleared = await reset_blocked_flags(SqlConversationStore(SessionLocal), tenant_id=tenant_id)
    print(f"cleared_quota_flags={cleared}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Clear conversation quota-blocked flags.")
    parser.add_argument("--tenant-id", default=None, help="Only clear flags for this tenant (plan change).")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(reset(args.tenant_id))


if __name__ == "__main__":
    main()
