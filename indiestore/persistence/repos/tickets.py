from __future__ import annotations

import logging

from sqlalchemy import select, update

from indiestore.core.errors import UnexpectedResultError
from indiestore.domain.models import RedeemedTicket
from indiestore.domain.records import AlmanacEvent, RedeemedTicketRecord
from indiestore.persistence.db import DBContext
from indiestore.persistence.guards import require_text, utcnow
from indiestore.persistence.repos.almanac import almanac_upsert


logger = logging.getLogger(__name__)


async def ticket_redeemed(
    ctx: DBContext,
    *,
    subject: str,
    resource: str,
    iss: str | None,
    ticket: str,
    token: str,
) -> None:
    # Store a ticket-for-token exchange; it stays unpublished until handed downstream.
    for field, value in (("subject", subject), ("resource", resource), ("ticket", ticket), ("token", token)):
        require_text(value, field)
    result = await ctx.session.execute(
        ctx.insert(RedeemedTicket).values(
            subject=subject,
            resource=resource,
            iss=iss,
            ticket=ticket,
            token=token,
        )
    )
    if result.rowcount != 1:
        raise UnexpectedResultError("did not store redeemed ticket")
    logger.debug("ticket_redeemed subject=%s resource=%s iss=%s", subject, resource, iss)


async def ticket_token_get_unpublished(ctx: DBContext) -> list[RedeemedTicketRecord]:
    result = await ctx.session.execute(
        select(
            RedeemedTicket.ticket_id,
            RedeemedTicket.created,
            RedeemedTicket.subject,
            RedeemedTicket.resource,
            RedeemedTicket.iss,
            RedeemedTicket.ticket,
            RedeemedTicket.token,
            RedeemedTicket.published,
        )
        .where(RedeemedTicket.published.is_(None))
        .order_by(RedeemedTicket.created, RedeemedTicket.ticket_id)
    )
    return [
        RedeemedTicketRecord(
            ticket_id=row.ticket_id,
            created=row.created,
            subject=row.subject,
            resource=row.resource,
            iss=row.iss,
            ticket=row.ticket,
            token=row.token,
            published=row.published,
        )
        for row in result
    ]


async def ticket_token_published(
    ctx: DBContext,
    *,
    subject: str,
    resource: str,
    iss: str | None,
    ticket: str,
    token: str,
) -> None:
    # One-way: only unpublished rows match, and publishing is noted in the almanac.
    iss_clause = RedeemedTicket.iss.is_(None) if iss is None else RedeemedTicket.iss == iss
    result = await ctx.session.execute(
        update(RedeemedTicket.__table__)
        .where(
            RedeemedTicket.subject == subject,
            RedeemedTicket.resource == resource,
            iss_clause,
            RedeemedTicket.ticket == ticket,
            RedeemedTicket.token == token,
            RedeemedTicket.published.is_(None),
        )
        .values(published=utcnow())
    )
    if not result.rowcount:
        raise UnexpectedResultError("did not mark redeemed ticket published")
    await almanac_upsert(ctx, AlmanacEvent.TICKET_PUBLISHED)
    logger.debug("ticket_token_published subject=%s resource=%s count=%s", subject, resource, result.rowcount)
