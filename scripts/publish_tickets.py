from __future__ import annotations

import asyncio

from indiestore.core.logging import configure_logging
from indiestore.persistence.db import open_database
from indiestore.services.chores import Chores
from indiestore.services.ticket_queue import ArqTicketPublisher


async def publish() -> None:
    # One pass over unpublished ticket tokens, for cron or manual catch-up.
    publisher = ArqTicketPublisher()
    try:
        async with open_database() as db:
            published = await Chores(db, publisher=publisher).publish_tickets()
    finally:
        await publisher.close()
    print(f"published_ticket_tokens={published}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(publish())
