from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
import logging

from sqlalchemy import select

from indiestore.core.errors import UnexpectedResultError
from indiestore.domain.models import Almanac
from indiestore.domain.records import AlmanacEntry, AlmanacEvent
from indiestore.persistence.db import DBContext
from indiestore.persistence.guards import as_utc, utcnow


logger = logging.getLogger(__name__)

NEVER = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _event_name(event: AlmanacEvent | str) -> str:
    return event.value if isinstance(event, Enum) else str(event)


async def almanac_get_all(ctx: DBContext) -> list[AlmanacEntry]:
    result = await ctx.session.execute(select(Almanac.event, Almanac.date).order_by(Almanac.event))
    return [AlmanacEntry(event=row.event, date=row.date) for row in result]


async def almanac_upsert(ctx: DBContext, event: AlmanacEvent | str, date: datetime | None = None) -> None:
    # Record when a maintenance event last happened; defaults to now.
    name = _event_name(event)
    when = as_utc(date, "date") if date is not None else utcnow()
    stmt = ctx.insert(Almanac).values(event=name, date=when)
    stmt = stmt.on_conflict_do_update(index_elements=["event"], set_={"date": stmt.excluded.date})
    result = await ctx.session.execute(stmt)
    if result.rowcount != 1:
        raise UnexpectedResultError("did not update almanac")
    logger.debug("almanac_upserted event=%s date=%s", name, when.isoformat())


async def almanac_claim(
    ctx: DBContext,
    event: AlmanacEvent | str,
    at_least_ms_since_last: int,
    now: datetime | None = None,
) -> datetime | None:
    """Decide whether a throttled event may run now.

    Ensures the event row exists, then reads it under a row lock (PostgreSQL)
    so concurrent sweeps serialize on it. Returns the timestamp the caller
    should record once its work is done, or None when the last run is more
    recent than ``at_least_ms_since_last`` milliseconds. ``now`` is reduced
    to the backend's timestamp resolution first, so the comparison uses the
    same instant that gets stored.
    """
    name = _event_name(event)
    now = ctx.stored_instant(as_utc(now) if now is not None else utcnow())
    ensure = ctx.insert(Almanac).values(event=name, date=NEVER).on_conflict_do_nothing(
        index_elements=["event"]
    )
    await ctx.session.execute(ensure)
    result = await ctx.session.execute(select(Almanac.date).where(Almanac.event == name).with_for_update())
    last = result.scalar_one()
    not_after = now - timedelta(milliseconds=max(0, at_least_ms_since_last))
    if last > not_after:
        logger.debug(
            "almanac_throttled event=%s last=%s not_after=%s",
            name,
            last.isoformat(),
            not_after.isoformat(),
        )
        return None
    return now
