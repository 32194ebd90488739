from __future__ import annotations

import argparse
import asyncio

from indiestore.core.logging import configure_logging
from indiestore.persistence.db import open_database
from indiestore.services.chores import Chores


async def prune(force: bool) -> None:
    # Sweep stale tokens and unused scopes; --force ignores the configured throttle.
    async with open_database() as db:
        chores = Chores(db)
        at_least = 0 if force else None
        tokens = await chores.clean_tokens(at_least)
        scopes = await chores.clean_scopes(at_least)
    print(f"pruned_tokens={tokens.removed if tokens else 'throttled'}")
    print(f"pruned_scopes={scopes.removed if scopes else 'throttled'}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Remove stale tokens and unused scopes")
    parser.add_argument("--force", action="store_true", help="Run even if a sweep ran recently")
    configure_logging()
    asyncio.run(prune(parser.parse_args().force))
