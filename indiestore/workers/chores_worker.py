from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from indiestore.core.config import get_settings
from indiestore.core.logging import configure_logging
from indiestore.persistence.db import create_database
from indiestore.services.chores import Chores
from indiestore.services.ticket_queue import ArqTicketPublisher


logger = logging.getLogger(__name__)


async def clean_tokens(ctx) -> int | None:
    # On-demand token sweep; still subject to the almanac throttle.
    result = await ctx["chores"].clean_tokens()
    return result.removed if result else None


async def clean_scopes(ctx) -> int | None:
    result = await ctx["chores"].clean_scopes()
    return result.removed if result else None


async def publish_tickets(ctx) -> int:
    return await ctx["chores"].publish_tickets()


async def _startup(ctx) -> None:
    # Open the database, then start the periodic chore loops alongside the job consumer.
    configure_logging()
    settings = get_settings()
    db = create_database(settings)
    await db.initialize()
    publisher = ArqTicketPublisher(settings)
    chores = Chores(db, publisher=publisher, settings=settings)
    chores.start()
    ctx["db"] = db
    ctx["publisher"] = publisher
    ctx["chores"] = chores
    logger.info("chores_worker_started engine=%s", db.engine_name)


async def _shutdown(ctx) -> None:
    # Stop loops before releasing the connections they use.
    chores = ctx.get("chores")
    if chores:
        await chores.stop()
    publisher = ctx.get("publisher")
    if publisher:
        await publisher.close()
    db = ctx.get("db")
    if db:
        await db._close_connection()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.chores_queue_name
    max_tries = 1
    functions = [clean_tokens, clean_scopes, publish_tickets]
    on_startup = _startup
    on_shutdown = _shutdown


async def run_standalone() -> None:
    # Run the chore loops without consuming arq jobs, e.g. where Redis only receives tickets.
    configure_logging()
    settings = get_settings()
    db = create_database(settings)
    await db.initialize()
    publisher = ArqTicketPublisher(settings)
    chores = Chores(db, publisher=publisher, settings=settings)
    try:
        await chores.run_forever()
    finally:
        await publisher.close()
        await db._close_connection()


if __name__ == "__main__":
    asyncio.run(run_standalone())
