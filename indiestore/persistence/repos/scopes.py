from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy import delete, exists, null, or_, select, true, union

from indiestore.domain.models import Authentication, Profile, ProfileScope, Scope, TokenScope
from indiestore.domain.records import AlmanacEvent, CleanupResult, ProfilesScopes, ScopeDetails
from indiestore.persistence.db import DBContext
from indiestore.persistence.guards import require_text
from indiestore.persistence.repos.almanac import almanac_claim, almanac_upsert


logger = logging.getLogger(__name__)

_SCOPE_DETAIL_COLUMNS = (
    Scope.scope,
    Scope.description,
    Scope.application,
    Scope.is_permanent,
    Scope.is_manually_added,
)


async def scope_upsert(
    ctx: DBContext,
    scope: str,
    application: str | None,
    description: str | None,
    manually_added: bool = False,
) -> None:
    # None application/description keep stored text; the manually-added mark is never cleared here.
    require_text(scope, "scope")
    logger.debug("scope_upsert scope=%s application=%s manually_added=%s", scope, application, manually_added)
    stmt = ctx.insert(Scope).values(
        scope=scope,
        application=application if application is not None else "",
        description=description if description is not None else "",
        is_manually_added=bool(manually_added),
    )
    updates: dict[str, Any] = {
        "is_manually_added": or_(Scope.is_manually_added, stmt.excluded.is_manually_added),
    }
    if application is not None:
        updates["application"] = stmt.excluded.application
    if description is not None:
        updates["description"] = stmt.excluded.description
    await ctx.session.execute(stmt.on_conflict_do_update(index_elements=["scope"], set_=updates))


def _scope_in_use_clause(scope: str):
    # Bound to a profile, bound to a token, or seeded as permanent.
    return or_(
        exists().where(ProfileScope.scope_id == Scope.scope_id, Scope.scope == scope),
        exists().where(TokenScope.scope_id == Scope.scope_id, Scope.scope == scope),
        exists().where(Scope.scope == scope, Scope.is_permanent.is_(True)),
    )


async def scope_delete(ctx: DBContext, scope: str) -> bool:
    # False leaves an in-use scope alone; deleting an unknown scope is a quiet success.
    in_use = (await ctx.session.execute(select(_scope_in_use_clause(scope)))).scalar()
    if in_use:
        logger.debug("scope_delete_skipped scope=%s reason=in_use", scope)
        return False
    result = await ctx.session.execute(delete(Scope.__table__).where(Scope.scope == scope))
    if result.rowcount:
        logger.debug("scope_deleted scope=%s", scope)
    else:
        logger.debug("scope_delete_noop scope=%s", scope)
    return True


def _profile_scope_pairs(profile: str, scopes: Iterable[str]):
    return (
        select(Profile.profile_id, Scope.scope_id)
        .select_from(Profile)
        .join(Scope, true())
        .where(Profile.profile == profile, Scope.scope.in_(list(scopes)))
    )


async def profile_scope_insert(ctx: DBContext, profile: str, scope: str) -> None:
    stmt = (
        ctx.insert(ProfileScope)
        .from_select(["profile_id", "scope_id"], _profile_scope_pairs(profile, [scope]))
        .on_conflict_do_nothing(index_elements=["profile_id", "scope_id"])
    )
    result = await ctx.session.execute(stmt)
    logger.debug("profile_scope_insert profile=%s scope=%s inserted=%s", profile, scope, result.rowcount)


async def profile_scopes_set_all(ctx: DBContext, profile: str, scopes: list[str]) -> None:
    # Replace the profile's bindings wholesale; an empty list clears them but keeps the profile.
    async with ctx.session.begin_nested():
        await ctx.session.execute(
            delete(ProfileScope.__table__).where(
                ProfileScope.profile_id.in_(select(Profile.profile_id).where(Profile.profile == profile))
            )
        )
        if scopes:
            stmt = ctx.insert(ProfileScope).from_select(
                ["profile_id", "scope_id"], _profile_scope_pairs(profile, scopes)
            )
            await ctx.session.execute(stmt)
    logger.debug("profile_scopes_set_all profile=%s scopes=%s", profile, ",".join(scopes))


def build_profiles_scopes(rows: Iterable[Any]) -> ProfilesScopes:
    """Fold (profile, scope details) rows into the denormalized scope views.

    Rows with a null profile contribute scopes to the index only; rows with a
    null scope register a profile with no bound scopes. Each scope maps to a
    single ScopeDetails shared by the index and every profile map holding it.
    """
    scope_index: dict[str, ScopeDetails] = {}
    profile_scopes: dict[str, dict[str, ScopeDetails]] = {}
    profiles: list[str] = []

    for row in rows:
        profile = row.profile
        scope = row.scope
        if scope and scope not in scope_index:
            scope_index[scope] = ScopeDetails(
                scope=scope,
                description=row.description,
                application=row.application,
                is_permanent=bool(row.is_permanent),
                is_manually_added=bool(row.is_manually_added),
            )
        if profile and profile not in profile_scopes:
            profiles.append(profile)
            profile_scopes[profile] = {}
        if profile and scope:
            details = scope_index[scope]
            if profile not in details.profiles:
                details.profiles.append(profile)
            profile_scopes[profile][scope] = details

    return ProfilesScopes(profiles=profiles, profile_scopes=profile_scopes, scope_index=scope_index)


async def profiles_scopes_by_identifier(ctx: DBContext, identifier: str) -> ProfilesScopes:
    bound = (
        select(Profile.profile.label("profile"), *_SCOPE_DETAIL_COLUMNS)
        .select_from(Profile)
        .join(Authentication, Authentication.identifier_id == Profile.identifier_id)
        .outerjoin(ProfileScope, ProfileScope.profile_id == Profile.profile_id)
        .outerjoin(Scope, Scope.scope_id == ProfileScope.scope_id)
        .where(Authentication.identifier == identifier)
    )
    # Permanent and manually-added scopes are offered even when nothing binds them.
    offered = select(null().label("profile"), *_SCOPE_DETAIL_COLUMNS).where(
        or_(Scope.is_permanent.is_(True), Scope.is_manually_added.is_(True))
    )
    result = await ctx.session.execute(bound.order_by(Profile.profile, Scope.scope))
    rows = list(result)
    result = await ctx.session.execute(offered.order_by(Scope.scope))
    rows.extend(result)
    return build_profiles_scopes(rows)


async def scope_cleanup(ctx: DBContext, at_least_ms_since_last: int) -> CleanupResult | None:
    # Remove scopes nothing references, except permanent and manually-added ones; throttled.
    event = AlmanacEvent.SCOPE_CLEANUP
    now = await almanac_claim(ctx, event, at_least_ms_since_last)
    if now is None:
        return None
    referenced = union(select(ProfileScope.scope_id), select(TokenScope.scope_id))
    result = await ctx.session.execute(
        delete(Scope.__table__).where(
            Scope.scope_id.not_in(select(referenced.subquery().c.scope_id)),
            Scope.is_permanent.is_(False),
            Scope.is_manually_added.is_(False),
        )
    )
    removed = result.rowcount or 0
    await almanac_upsert(ctx, event, now)
    logger.info("scope_cleanup_completed removed=%s at_least_ms_since_last=%s", removed, at_least_ms_since_last)
    return CleanupResult(event=event.value, removed=removed, ran_at=now)
