from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from indiestore.core.config import Settings
from indiestore.persistence.db import Database
from indiestore.persistence.repos.authentication import authentication_upsert, profile_identifier_insert
from indiestore.persistence.repos.tokens import redeem_code


ALICE = "alice"
ALICE_PROFILE = "https://alice.example/"
CLIENT_ID = "https://client.example/"
POSTGRES_TEST_URL = os.getenv("POSTGRES_TEST_URL")


def sqlite_settings(tmp_path: Path, **overrides) -> Settings:
    # File-backed so every pooled connection sees the same database.
    values = {
        "db_connection_string": f"sqlite://{tmp_path / 'indiestore.sqlite'}",
        "test_mode": True,
    }
    values.update(overrides)
    return Settings(**values)


def postgres_settings(**overrides) -> Settings:
    values = {"db_connection_string": POSTGRES_TEST_URL, "test_mode": True}
    values.update(overrides)
    return Settings(**values)


def whole_seconds_now() -> datetime:
    # SQLite keeps epoch seconds, so compare against second-resolution instants.
    return datetime.now(timezone.utc).replace(microsecond=0)


async def create_user(
    db: Database,
    identifier: str = ALICE,
    profiles: tuple[str, ...] = (ALICE_PROFILE,),
    credential: str | None = "$scrypt$hash",
) -> None:
    # Provision an identifier and its profiles for repository tests.
    async with db.context() as ctx:
        await authentication_upsert(ctx, identifier, credential)
        for profile in profiles:
            await profile_identifier_insert(ctx, profile, identifier)


async def redeem(
    db: Database,
    *,
    created: datetime | None = None,
    is_token: bool = True,
    scopes: list[str] | None = None,
    lifespan_seconds: int | None = 3600,
    refresh_lifespan_seconds: int | None = 86400,
    profile: str = ALICE_PROFILE,
    identifier: str = ALICE,
    **extra,
) -> str:
    # Redeem a fresh code and return its id.
    code_id = str(uuid4())
    async with db.context() as ctx:
        assert await redeem_code(
            ctx,
            code_id=code_id,
            created=created or whole_seconds_now(),
            is_token=is_token,
            client_id=CLIENT_ID,
            profile=profile,
            identifier=identifier,
            scopes=scopes if scopes is not None else ["profile", "create"],
            lifespan_seconds=lifespan_seconds,
            refresh_lifespan_seconds=refresh_lifespan_seconds,
            **extra,
        )
    return code_id
