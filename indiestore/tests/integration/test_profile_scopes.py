from __future__ import annotations

import pytest

from indiestore.core.errors import UnexpectedResultError
from indiestore.persistence.repos.authentication import profile_identifier_insert, profile_is_valid
from indiestore.persistence.repos.scopes import (
    profile_scope_insert,
    profile_scopes_set_all,
    profiles_scopes_by_identifier,
    scope_upsert,
)
from indiestore.tests.utils.fixtures import ALICE, ALICE_PROFILE, create_user


BLOG_PROFILE = "https://blog.alice.example/"


@pytest.mark.asyncio
async def test_profile_identifier_insert_requires_known_identifier(db) -> None:
    with pytest.raises(UnexpectedResultError):
        async with db.context() as ctx:
            await profile_identifier_insert(ctx, ALICE_PROFILE, "ghost")


@pytest.mark.asyncio
async def test_profile_is_valid(db) -> None:
    await create_user(db)
    async with db.context() as ctx:
        # Repeat inserts are ignored.
        await profile_identifier_insert(ctx, ALICE_PROFILE, ALICE)
        assert await profile_is_valid(ctx, ALICE_PROFILE) is True
        assert await profile_is_valid(ctx, "https://elsewhere.example/") is False


@pytest.mark.asyncio
async def test_profile_scopes_set_all_replaces_bindings(db) -> None:
    await create_user(db, profiles=(ALICE_PROFILE, BLOG_PROFILE))
    async with db.context() as ctx:
        await profile_scopes_set_all(ctx, ALICE_PROFILE, ["profile", "create", "media"])
        await profile_scopes_set_all(ctx, BLOG_PROFILE, ["create"])
    async with db.context() as ctx:
        await profile_scopes_set_all(ctx, ALICE_PROFILE, ["profile", "read"])
        views = await profiles_scopes_by_identifier(ctx, ALICE)
    assert sorted(views.profile_scopes[ALICE_PROFILE]) == ["profile", "read"]
    assert sorted(views.profile_scopes[BLOG_PROFILE]) == ["create"]

    async with db.context() as ctx:
        await profile_scopes_set_all(ctx, ALICE_PROFILE, [])
        views = await profiles_scopes_by_identifier(ctx, ALICE)
    # Clearing bindings keeps the profile itself.
    assert views.profile_scopes[ALICE_PROFILE] == {}
    assert sorted(views.profiles) == [ALICE_PROFILE, BLOG_PROFILE]


@pytest.mark.asyncio
async def test_profile_scope_insert_ignores_duplicates_and_unknown_scopes(db) -> None:
    await create_user(db)
    async with db.context() as ctx:
        await profile_scope_insert(ctx, ALICE_PROFILE, "profile")
        await profile_scope_insert(ctx, ALICE_PROFILE, "profile")
        await profile_scope_insert(ctx, ALICE_PROFILE, "x-unknown")
        views = await profiles_scopes_by_identifier(ctx, ALICE)
    assert list(views.profile_scopes[ALICE_PROFILE]) == ["profile"]


@pytest.mark.asyncio
@pytest.mark.filterwarnings("error::sqlalchemy.exc.SAWarning")
async def test_profile_scope_binding_compiles_without_cartesian_warning(db) -> None:
    await create_user(db)
    async with db.context() as ctx:
        await profile_scopes_set_all(ctx, ALICE_PROFILE, ["profile", "create"])
        await profile_scope_insert(ctx, ALICE_PROFILE, "media")
        views = await profiles_scopes_by_identifier(ctx, ALICE)
    assert sorted(views.profile_scopes[ALICE_PROFILE]) == ["create", "media", "profile"]

@pytest.mark.asyncio
async def test_profiles_scopes_share_details(db) -> None:
    await create_user(db, profiles=(ALICE_PROFILE, BLOG_PROFILE))
    await create_user(db, identifier="bob", profiles=("https://bob.example/",))
    async with db.context() as ctx:
        await profile_scopes_set_all(ctx, ALICE_PROFILE, ["profile", "create"])
        await profile_scopes_set_all(ctx, BLOG_PROFILE, ["create"])
        await profile_scopes_set_all(ctx, "https://bob.example/", ["media"])
        views = await profiles_scopes_by_identifier(ctx, ALICE)

    create = views.scope_index["create"]
    assert views.profile_scopes[ALICE_PROFILE]["create"] is create
    assert views.profile_scopes[BLOG_PROFILE]["create"] is create
    assert sorted(create.profiles) == [ALICE_PROFILE, BLOG_PROFILE]
    # Another user's bindings never leak into this view.
    assert "https://bob.example/" not in views.profiles
    assert views.scope_index["media"].profiles == []


@pytest.mark.asyncio
async def test_scope_upsert_keeps_stored_text_and_manual_mark(db) -> None:
    async with db.context() as ctx:
        await scope_upsert(ctx, "x-widgets", "Widgets", "Manage widgets", manually_added=True)
        await scope_upsert(ctx, "x-widgets", None, None, manually_added=False)
        views = await profiles_scopes_by_identifier(ctx, ALICE)
    details = views.scope_index["x-widgets"]
    assert details.application == "Widgets"
    assert details.description == "Manage widgets"
    assert details.is_manually_added is True
    assert details.is_permanent is False

    async with db.context() as ctx:
        await scope_upsert(ctx, "x-widgets", "Gadgets", "Manage gadgets")
        views = await profiles_scopes_by_identifier(ctx, ALICE)
    assert views.scope_index["x-widgets"].description == "Manage gadgets"
    assert views.scope_index["x-widgets"].application == "Gadgets"
