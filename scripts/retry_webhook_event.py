from __future__ import annotations

import argparse
import asyncio
import json

from plumbgate.core.logging import configure_logging
from plumbgate.persistence.db import SessionLocal
from plumbgate.persistence.repos import webhook_events
from plumbgate.services.webhooks import retry_failed_event


async def list_failed(provider: str | None, limit: int) -> None:
    async with SessionLocal() as session:
        events = await webhook_events.list_failed(session, provider=provider, limit=limit)
        for event in events:
            print(
                json.dumps(
                    {
                        "provider": event.provider,
                        "event_id": event.event_id,
                        "event_type": event.event_type,
                        "attempts": event.attempts,
                        "last_error": event.last_error,
                        "received_at": event.received_at.isoformat() if event.received_at else None,
                    }
                )
            )


async def retry(provider: str, event_id: str) -> int:
    async with SessionLocal() as session:
        outcome = await retry_failed_event(session, provider=provider, event_id=event_id)
    if outcome is None:
        print(f"webhook_event_not_found provider={provider} event_id={event_id}")
        return 1
    print(f"webhook_event_retried status={outcome.event_status} http_status={outcome.status_code}")
    return 0 if outcome.status_code < 400 else 2


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect and re-run failed webhook events")
    parser.add_argument("--provider", default=None)
    parser.add_argument("--event-id", default=None, help="Retry this event; omit to list failed events")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()
    configure_logging()
    if args.event_id is None:
        asyncio.run(list_failed(args.provider, args.limit))
        return
    if not args.provider:
        parser.error("--provider is required with --event-id")
    raise SystemExit(asyncio.run(retry(args.provider, args.event_id)))


if __name__ == "__main__":
    main()
