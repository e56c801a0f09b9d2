"""Operator script for retry queues.

    python monitor_queue.py stats payments
    python monitor_queue.py dlq payments
    python monitor_queue.py retry payments <message_id>
    python monitor_queue.py purge payments
"""

import asyncio
import json
import sys

import redis.asyncio as redis

from queue_resilience.config import get_settings
from queue_resilience.errors import QueueNotRegisteredError
from queue_resilience.logging import configure_logging
from queue_resilience.retry_queue import RetryQueue

USAGE = "Usage: monitor_queue.py {stats|dlq|retry|purge} <queue> [message_id]"


async def ensure_queue_exists(r, queue_name):
    if not await r.exists(RetryQueue.queue_key(queue_name), RetryQueue.dlq_key(queue_name)):
        raise QueueNotRegisteredError(queue_name)


async def monitor_queue(command, queue_name, message_id=None):
    """Run one operator command against a retry queue."""
    r = redis.from_url(get_settings().REDIS_URL, decode_responses=True)
    queue = RetryQueue(r)

    try:
        await ensure_queue_exists(r, queue_name)

        if command == "stats":
            stats = await queue.get_queue_stats(queue_name)
            print(json.dumps(stats.model_dump(), indent=2))
        elif command == "dlq":
            entries = await queue.get_dlq_messages(queue_name)
            print(f"{len(entries)} message(s) in DLQ for {queue_name}")
            for entry in entries:
                print(json.dumps(entry.model_dump(), indent=2, ensure_ascii=False))
        elif command == "retry":
            if not message_id:
                print(USAGE)
                return 2
            if not await queue.retry_dlq_message(queue_name, message_id):
                print(f"Message {message_id} not found in DLQ for {queue_name}")
                return 1
            print(f"Message {message_id} moved back to {queue_name}")
        elif command == "purge":
            removed = await queue.purge_dlq(queue_name)
            print(f"Removed {removed} message(s) from DLQ for {queue_name}")
        else:
            print(USAGE)
            return 2
    except QueueNotRegisteredError as e:
        print(e)
        return 1
    finally:
        await r.aclose()
    return 0


def main(argv):
    # stdout carries command output only
    settings = get_settings()
    configure_logging(
        "monitor_queue",
        log_level="WARNING",
        json_format=settings.LOG_JSON_FORMAT,
        stream=sys.stderr,
    )
    if len(argv) < 2:
        print(USAGE)
        return 2
    message_id = argv[2] if len(argv) > 2 else None
    return asyncio.run(monitor_queue(argv[0], argv[1], message_id))


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
