from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update

from indiestore.core.errors import DataValidationError, UnexpectedResultError
from indiestore.domain.models import Authentication, Profile, Scope, Token, TokenScope
from indiestore.domain.records import AlmanacEvent, CleanupResult, RefreshResult, TokenRecord
from indiestore.persistence.db import DBContext
from indiestore.persistence.guards import as_utc, require_text
from indiestore.persistence.repos.almanac import almanac_claim, almanac_upsert


logger = logging.getLogger(__name__)

_TOKEN_COLUMNS = (
    Token.code_id,
    Profile.profile,
    Authentication.identifier,
    Token.client_id,
    Token.created,
    Token.expires,
    Token.refresh_expires,
    Token.refreshed,
    Token.duration,
    Token.refresh_duration,
    Token.refresh_count,
    Token.is_revoked,
    Token.is_token,
    Token.resource,
    Token.profile_data,
)


def normalize_code_id(code_id: str | UUID) -> str:
    # Canonical lowercase hyphenated UUID text, identical on both engines.
    try:
        return str(code_id if isinstance(code_id, UUID) else UUID(str(code_id)))
    except ValueError as exc:
        raise DataValidationError(f"invalid code_id {code_id!r}") from exc


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def _token_select():
    return (
        select(*_TOKEN_COLUMNS)
        .select_from(Token)
        .join(Profile, Profile.profile_id == Token.profile_id)
        .join(Authentication, Authentication.identifier_id == Profile.identifier_id)
    )


async def _scopes_by_code_id(ctx: DBContext, code_ids: list[str]) -> dict[str, list[str]]:
    if not code_ids:
        return {}
    result = await ctx.session.execute(
        select(TokenScope.code_id, Scope.scope)
        .join(Scope, Scope.scope_id == TokenScope.scope_id)
        .where(TokenScope.code_id.in_(code_ids))
        .order_by(Scope.scope)
    )
    scopes: dict[str, list[str]] = defaultdict(list)
    for row in result:
        scopes[str(row.code_id)].append(row.scope)
    return scopes


def _to_record(row: Any, scopes: list[str]) -> TokenRecord:
    return TokenRecord(
        code_id=str(row.code_id),
        profile=row.profile,
        identifier=row.identifier,
        client_id=row.client_id,
        created=row.created,
        expires=row.expires,
        refresh_expires=row.refresh_expires,
        refreshed=row.refreshed,
        duration=row.duration,
        refresh_duration=row.refresh_duration,
        refresh_count=row.refresh_count,
        is_revoked=bool(row.is_revoked),
        is_token=bool(row.is_token),
        resource=row.resource,
        profile_data=row.profile_data,
        scopes=list(scopes),
    )


async def redeem_code(
    ctx: DBContext,
    *,
    code_id: str | UUID,
    created: datetime,
    is_token: bool,
    client_id: str,
    profile: str,
    identifier: str,
    scopes: list[str],
    lifespan_seconds: int | None = None,
    refresh_lifespan_seconds: int | None = None,
    profile_data: dict[str, Any] | None = None,
    resource: str | None = None,
) -> bool:
    """Record the redemption of an authorization code.

    Inserts the row only when ``code_id`` is new. A repeated redemption
    revokes the existing row instead and returns False, so at most one live
    row per code ever exists. Unknown scopes are registered on the way.
    """
    code_id = normalize_code_id(code_id)
    created = as_utc(created, "created")
    require_text(client_id, "client_id")
    wanted_scopes = _unique(list(scopes or []))
    logger.debug(
        "redeem_code code_id=%s is_token=%s client_id=%s profile=%s identifier=%s scopes=%s",
        code_id,
        is_token,
        client_id,
        profile,
        identifier,
        ",".join(wanted_scopes),
    )

    async with ctx.session.begin_nested():
        result = await ctx.session.execute(
            select(Profile.profile_id)
            .join(Authentication, Authentication.identifier_id == Profile.identifier_id)
            .where(Profile.profile == profile, Authentication.identifier == identifier)
        )
        profile_id = result.scalar_one_or_none()
        if profile_id is None:
            logger.error("redeem_code_failed code_id=%s reason=unknown_profile profile=%s", code_id, profile)
            raise UnexpectedResultError("did not redeem code")

        expires = created + timedelta(seconds=lifespan_seconds) if lifespan_seconds is not None else None
        refresh_expires = (
            created + timedelta(seconds=refresh_lifespan_seconds)
            if refresh_lifespan_seconds is not None
            else None
        )
        stmt = ctx.insert(Token).values(
            code_id=code_id,
            profile_id=profile_id,
            created=created,
            is_token=bool(is_token),
            client_id=client_id,
            duration=lifespan_seconds,
            expires=expires,
            refresh_duration=refresh_lifespan_seconds,
            refresh_expires=refresh_expires,
            resource=resource,
            profile_data=profile_data,
        )
        # A replayed code revokes whatever the first redemption created.
        stmt = stmt.on_conflict_do_update(index_elements=["code_id"], set_={"is_revoked": True}).returning(
            Token.is_revoked
        )
        is_revoked = (await ctx.session.execute(stmt)).scalar_one()
        if is_revoked:
            logger.warning("redeem_code_replayed code_id=%s client_id=%s", code_id, client_id)
            return False

        if wanted_scopes:
            await ctx.session.execute(
                ctx.insert(Scope)
                .values([{"scope": scope} for scope in wanted_scopes])
                .on_conflict_do_nothing(index_elements=["scope"])
            )
            result = await ctx.session.execute(select(Scope.scope_id).where(Scope.scope.in_(wanted_scopes)))
            scope_ids = list(result.scalars())
            if len(scope_ids) != len(wanted_scopes):
                logger.error(
                    "redeem_code_scope_mismatch code_id=%s expected=%s actual=%s",
                    code_id,
                    len(wanted_scopes),
                    len(scope_ids),
                )
                raise UnexpectedResultError("did not set all scopes on token")
            await ctx.session.execute(
                ctx.insert(TokenScope),
                [{"code_id": code_id, "scope_id": scope_id} for scope_id in scope_ids],
            )
    logger.debug("code_redeemed code_id=%s", code_id)
    return True


async def token_get_by_code_id(ctx: DBContext, code_id: str | UUID) -> TokenRecord | None:
    try:
        code_id = normalize_code_id(code_id)
    except DataValidationError:
        return None
    row = (await ctx.session.execute(_token_select().where(Token.code_id == code_id))).first()
    if row is None:
        return None
    scopes = await _scopes_by_code_id(ctx, [code_id])
    return _to_record(row, scopes.get(code_id, []))


async def tokens_get_by_identifier(ctx: DBContext, identifier: str) -> list[TokenRecord]:
    # Most recent activity first: refreshed when set, otherwise created.
    result = await ctx.session.execute(
        _token_select()
        .where(Authentication.identifier == identifier)
        .order_by(func.coalesce(Token.refreshed, Token.created).desc(), Token.created.desc())
    )
    rows = list(result)
    scopes = await _scopes_by_code_id(ctx, [str(row.code_id) for row in rows])
    return [_to_record(row, scopes.get(str(row.code_id), [])) for row in rows]


async def token_revoke_by_code_id(ctx: DBContext, code_id: str | UUID, revoked_by: str | None = None) -> None:
    code_id = normalize_code_id(code_id)
    result = await ctx.session.execute(
        update(Token.__table__).where(Token.code_id == code_id).values(is_revoked=True)
    )
    if result.rowcount != 1:
        raise UnexpectedResultError("did not revoke token")
    logger.info("token_revoked code_id=%s revoked_by=%s", code_id, revoked_by or "-")


async def token_refresh_revoke_by_code_id(ctx: DBContext, code_id: str | UUID) -> None:
    # Ends refreshability only; current access stays valid until it expires.
    code_id = normalize_code_id(code_id)
    result = await ctx.session.execute(
        update(Token.__table__)
        .where(Token.code_id == code_id)
        .values(refresh_expires=None, refresh_duration=None)
    )
    if result.rowcount != 1:
        raise UnexpectedResultError("did not revoke token refresh")
    logger.info("token_refresh_revoked code_id=%s", code_id)


async def refresh_code(
    ctx: DBContext,
    code_id: str | UUID,
    refreshed: datetime,
    remove_scopes: list[str] | None = None,
) -> RefreshResult | None:
    """Extend a refreshable token from ``refreshed``.

    Returns None when the token is unknown, revoked, not refreshable, or its
    refresh window has closed. Scopes can only shrink: every scope named in
    ``remove_scopes`` must be on the token, and the resulting scope list is
    returned only when something was removed.
    """
    code_id = normalize_code_id(code_id)
    refreshed = as_utc(refreshed, "refreshed")
    removing = _unique(list(remove_scopes or []))
    logger.debug("refresh_code code_id=%s remove_scopes=%s", code_id, ",".join(removing))

    async with ctx.session.begin_nested():
        result = await ctx.session.execute(
            select(
                Token.is_revoked,
                Token.duration,
                Token.refresh_duration,
                Token.refresh_expires,
                Token.refresh_count,
            )
            .where(Token.code_id == code_id)
            .with_for_update()
        )
        row = result.first()
        if (
            row is None
            or row.is_revoked
            or row.refresh_expires is None
            or row.refresh_duration is None
            or row.refresh_expires <= refreshed
        ):
            logger.debug("refresh_code_refused code_id=%s", code_id)
            return None

        expires = refreshed + timedelta(seconds=row.duration) if row.duration is not None else None
        refresh_expires = refreshed + timedelta(seconds=row.refresh_duration)
        refresh_count = row.refresh_count + 1
        await ctx.session.execute(
            update(Token.__table__)
            .where(Token.code_id == code_id)
            .values(
                refreshed=refreshed,
                expires=expires,
                refresh_expires=refresh_expires,
                refresh_count=refresh_count,
            )
        )

        scopes = None
        if removing:
            result = await ctx.session.execute(
                delete(TokenScope.__table__).where(
                    TokenScope.code_id == code_id,
                    TokenScope.scope_id.in_(select(Scope.scope_id).where(Scope.scope.in_(removing))),
                )
            )
            if result.rowcount != len(removing):
                logger.error(
                    "refresh_code_scope_mismatch code_id=%s expected=%s actual=%s",
                    code_id,
                    len(removing),
                    result.rowcount,
                )
                raise UnexpectedResultError("did not remove scopes from token")
            scopes = (await _scopes_by_code_id(ctx, [code_id])).get(code_id, [])

    logger.debug("code_refreshed code_id=%s refresh_count=%s", code_id, refresh_count)
    return RefreshResult(
        expires=expires,
        refresh_expires=refresh_expires,
        refresh_count=refresh_count,
        scopes=scopes,
    )


async def token_cleanup(
    ctx: DBContext,
    code_lifespan_seconds: int,
    at_least_ms_since_last: int,
) -> CleanupResult | None:
    """Delete codes that can no longer be used; throttled through the almanac.

    Only rows created more than ``code_lifespan_seconds`` ago are considered
    (a negative value widens that to rows created just now). Of those, profile
    redemptions, revoked tokens, and expired tokens without a live refresh
    window are removed.
    """
    event = AlmanacEvent.TOKEN_CLEANUP
    now = await almanac_claim(ctx, event, at_least_ms_since_last)
    if now is None:
        return None
    created_before = now - timedelta(seconds=code_lifespan_seconds)
    result = await ctx.session.execute(
        delete(Token.__table__).where(
            Token.created < created_before,
            or_(
                Token.is_token.is_(False),
                Token.is_revoked.is_(True),
                and_(
                    Token.expires < now,
                    or_(Token.refresh_expires.is_(None), Token.refresh_expires < now),
                ),
            ),
        )
    )
    removed = result.rowcount or 0
    await almanac_upsert(ctx, event, now)
    logger.info(
        "token_cleanup_completed removed=%s code_lifespan_seconds=%s at_least_ms_since_last=%s",
        removed,
        code_lifespan_seconds,
        at_least_ms_since_last,
    )
    return CleanupResult(event=event.value, removed=removed, ran_at=now)
