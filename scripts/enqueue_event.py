from __future__ import annotations

import argparse
import asyncio

from chatpipe.core.logging import configure_logging
from chatpipe.domain.events import InboundEvent
from chatpipe.services.queue import enqueue_inbound_event, get_queue_depth


async def enqueue(args: argparse.Namespace) -> None:
    event = InboundEvent(
        provider_message_id=args.provider_message_id,
        tenant_id=args.tenant_id,
        channel_id=args.channel_id,
        sender_id=args.sender_id,
        text=args.text,
    )
    job_id = await enqueue_inbound_event(event)
    depth = await get_queue_depth()
    print(f"job_id={job_id} correlation_id={event.correlation_id} queue_depth={depth if depth is not None else 'unknown'}")


def main() -> None:
    # Local smoke helper: push one inbound message onto the worker queue.
    parser = argparse.ArgumentParser(description="Enqueue one inbound chat message.")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--channel-id", required=True)
    parser.add_argument("--sender-id", required=True)
    parser.add_argument("--provider-message-id", required=True)
    parser.add_argument("--text", required=True)
    configure_logging()
    asyncio.run(enqueue(parser.parse_args()))


if __name__ == "__main__":
    main()
