from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone

from plumbgate.core.logging import configure_logging
from plumbgate.persistence.db import SessionLocal
from plumbgate.services.webhooks import prune_webhook_events


async def prune(hours: int | None) -> None:
    # Processed events older than the replay window go; failed events stay.
    older_than = None
    if hours is not None:
        older_than = datetime.now(timezone.utc) - timedelta(hours=hours)
    async with SessionLocal() as session:
        deleted = await prune_webhook_events(session, older_than=older_than)
        print(f"pruned_webhook_events={deleted}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Prune processed webhook events past the replay window")
    parser.add_argument("--hours", type=int, default=None, help="Override WEBHOOK_REPLAY_WINDOW_HOURS")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(prune(args.hours))


if __name__ == "__main__":
    main()
