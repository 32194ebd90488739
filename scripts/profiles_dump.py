from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict
import json

from indiestore.persistence.db import open_database
from indiestore.persistence.repos.scopes import profiles_scopes_by_identifier


async def dump(identifier: str) -> None:
    # Print the profile and scope views for one user as JSON.
    async with open_database() as db:
        async with db.context() as ctx:
            profiles_scopes = await profiles_scopes_by_identifier(ctx, identifier)
    payload = {
        "profiles": profiles_scopes.profiles,
        "profile_scopes": {
            profile: sorted(scopes) for profile, scopes in profiles_scopes.profile_scopes.items()
        },
        "scope_index": {scope: asdict(details) for scope, details in profiles_scopes.scope_index.items()},
    }
    print(json.dumps(payload, indent=2, sort_keys=True))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Dump profiles and scopes for a user")
    parser.add_argument("identifier", help="User identifier")
    asyncio.run(dump(parser.parse_args().identifier))
