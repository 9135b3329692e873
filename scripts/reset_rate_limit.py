from __future__ import annotations

import argparse
import asyncio

from chatpipe.core.logging import configure_logging
from chatpipe.services.counter_store import RedisCounterStore
from chatpipe.services.rate_limit import RateLimiter


async def reset(tenant_id: str, conversation_id: str | None, sender_id: str) -> None:
    removed = await RateLimiter(RedisCounterStore()).reset(tenant_id, conversation_id, sender_id)
    print(f"rate_limit_reset={'yes' if removed else 'nothing_to_clear'}")


def main() -> None:
    # Support helper: lift a sender's rate limit before the window ends.
    parser = argparse.ArgumentParser(description="Clear one sender's rate-limit window.")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--conversation-id", default=None, help="Conversation id carried by the inbound event, if any.")
    parser.add_argument("--sender-id", required=True)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(reset(args.tenant_id, args.conversation_id, args.sender_id))


if __name__ == "__main__":
    main()
