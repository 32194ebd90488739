from __future__ import annotations

import logging
from uuid import UUID, uuid4

from sqlalchemy import select, update

from indiestore.core.errors import DataValidationError, UnexpectedResultError
from indiestore.domain.models import Resource
from indiestore.domain.records import ResourceRecord
from indiestore.persistence.db import DBContext
from indiestore.persistence.guards import scrub


logger = logging.getLogger(__name__)

_RESOURCE_COLUMNS = (Resource.resource_id, Resource.secret, Resource.description, Resource.created)


def _normalize_resource_id(resource_id: str) -> str:
    # Canonical lowercase hyphenated form, identical on both engines.
    try:
        return str(UUID(str(resource_id)))
    except ValueError as exc:
        raise DataValidationError(f"invalid resource_id {resource_id!r}") from exc


def _to_record(row) -> ResourceRecord:
    return ResourceRecord(
        resource_id=str(row.resource_id),
        secret=row.secret,
        description=row.description,
        created=row.created,
    )


async def resource_upsert(
    ctx: DBContext,
    resource_id: str | None,
    secret: str | None,
    description: str | None,
) -> ResourceRecord:
    # New id when none is given; otherwise update in place, keeping stored values for None arguments.
    if secret is not None and not secret:
        raise DataValidationError("resource secret must not be empty")
    if resource_id is None:
        if secret is None:
            raise DataValidationError("new resource needs a secret")
        resource_id = str(uuid4())
    else:
        resource_id = _normalize_resource_id(resource_id)
    logger.debug(
        "resource_upsert resource_id=%s secret_mask=%s description=%s",
        resource_id,
        scrub(secret),
        description,
    )

    if secret is None:
        # Description-only change; the row must already exist.
        stmt = update(Resource.__table__).where(Resource.resource_id == resource_id)
        if description is not None:
            stmt = stmt.values(description=description)
        else:
            stmt = stmt.values(resource_id=Resource.resource_id)
        row = (await ctx.session.execute(stmt.returning(*_RESOURCE_COLUMNS))).first()
        if row is None:
            raise DataValidationError("new resource needs a secret")
        return _to_record(row)

    stmt = ctx.insert(Resource).values(
        resource_id=resource_id,
        secret=secret,
        description=description if description is not None else "",
    )
    updates = {"secret": stmt.excluded.secret}
    if description is not None:
        updates["description"] = stmt.excluded.description
    stmt = stmt.on_conflict_do_update(index_elements=["resource_id"], set_=updates).returning(
        *_RESOURCE_COLUMNS
    )
    row = (await ctx.session.execute(stmt)).first()
    if row is None:
        raise UnexpectedResultError("did not upsert resource")
    return _to_record(row)


async def resource_get(ctx: DBContext, resource_id: str) -> ResourceRecord | None:
    try:
        resource_id = _normalize_resource_id(resource_id)
    except DataValidationError:
        logger.debug("resource_get_invalid_id resource_id=%s", resource_id)
        return None
    result = await ctx.session.execute(select(*_RESOURCE_COLUMNS).where(Resource.resource_id == resource_id))
    row = result.first()
    return _to_record(row) if row is not None else None
