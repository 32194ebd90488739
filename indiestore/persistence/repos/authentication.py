from __future__ import annotations

import logging

from sqlalchemy import exists, select, update

from indiestore.core.errors import UnexpectedResultError
from indiestore.domain.models import Authentication, Profile
from indiestore.domain.records import AuthenticationRecord
from indiestore.persistence.db import DBContext
from indiestore.persistence.guards import require_text, scrub, utcnow


logger = logging.getLogger(__name__)


async def authentication_get(ctx: DBContext, identifier: str) -> AuthenticationRecord | None:
    result = await ctx.session.execute(
        select(
            Authentication.identifier,
            Authentication.credential,
            Authentication.otp_key,
            Authentication.created,
            Authentication.last_authentication,
        ).where(Authentication.identifier == identifier)
    )
    row = result.first()
    if row is None:
        return None
    return AuthenticationRecord(
        identifier=row.identifier,
        credential=row.credential,
        otp_key=row.otp_key,
        created=row.created,
        last_authentication=row.last_authentication,
    )


async def authentication_upsert(
    ctx: DBContext,
    identifier: str,
    credential: str | None,
    otp_key: str | None = None,
) -> None:
    # Create or replace the credential; a stored OTP key survives unless a new one is given.
    require_text(identifier, "identifier")
    logger.debug(
        "authentication_upsert identifier=%s credential_mask=%s otp_key_mask=%s",
        identifier,
        scrub(credential),
        scrub(otp_key),
    )
    stmt = ctx.insert(Authentication).values(identifier=identifier, credential=credential, otp_key=otp_key)
    updates = {"credential": stmt.excluded.credential}
    if otp_key is not None:
        updates["otp_key"] = stmt.excluded.otp_key
    stmt = stmt.on_conflict_do_update(index_elements=["identifier"], set_=updates)
    result = await ctx.session.execute(stmt)
    if result.rowcount != 1:
        raise UnexpectedResultError("did not upsert authentication")


async def _update_authentication(ctx: DBContext, identifier: str, what: str, **values) -> None:
    result = await ctx.session.execute(
        update(Authentication.__table__).where(Authentication.identifier == identifier).values(**values)
    )
    if result.rowcount != 1:
        raise UnexpectedResultError(f"did not update {what}")


async def authentication_update_credential(ctx: DBContext, identifier: str, credential: str | None) -> None:
    logger.debug("authentication_update_credential identifier=%s credential_mask=%s", identifier, scrub(credential))
    await _update_authentication(ctx, identifier, "credential", credential=credential)


async def authentication_update_otp_key(ctx: DBContext, identifier: str, otp_key: str | None = None) -> None:
    logger.debug("authentication_update_otp_key identifier=%s otp_key_mask=%s", identifier, scrub(otp_key))
    await _update_authentication(ctx, identifier, "otp_key", otp_key=otp_key)


async def authentication_success(ctx: DBContext, identifier: str) -> None:
    # Stamp the login time only; credential and OTP key are left alone.
    await _update_authentication(ctx, identifier, "authentication success event", last_authentication=utcnow())


async def profile_identifier_insert(ctx: DBContext, profile: str, identifier: str) -> None:
    require_text(profile, "profile")
    result = await ctx.session.execute(
        select(Authentication.identifier_id).where(Authentication.identifier == identifier)
    )
    identifier_id = result.scalar_one_or_none()
    if identifier_id is None:
        raise UnexpectedResultError(f"no such identifier {identifier!r}")
    stmt = (
        ctx.insert(Profile)
        .values(identifier_id=identifier_id, profile=profile)
        .on_conflict_do_nothing(index_elements=["identifier_id", "profile"])
    )
    result = await ctx.session.execute(stmt)
    logger.debug("profile_identifier_insert profile=%s identifier=%s inserted=%s", profile, identifier, result.rowcount)


async def profile_is_valid(ctx: DBContext, profile: str) -> bool:
    # True when at least one identifier owns the profile.
    result = await ctx.session.execute(select(exists().where(Profile.profile == profile)))
    return bool(result.scalar())
