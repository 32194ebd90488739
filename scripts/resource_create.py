from __future__ import annotations

import argparse
import asyncio
import secrets
import sys

from indiestore.core.logging import configure_logging
from indiestore.persistence.db import open_database
from indiestore.persistence.repos.resources import resource_upsert


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create or update a resource server entry")
    parser.add_argument("--id", dest="resource_id", default=None, help="Existing resource id to update")
    parser.add_argument("--secret", default=None, help="Shared secret; generated for new resources when omitted")
    parser.add_argument("description", nargs="*", help="Free-form description")
    return parser


async def _create_resource(args: argparse.Namespace) -> int:
    # Only brand-new resources get a generated secret; updates keep the stored one unless given.
    secret = args.secret
    if secret is None and args.resource_id is None:
        secret = secrets.token_urlsafe(32)
    description = " ".join(args.description) if args.description else None

    async with open_database() as db:
        async with db.context() as ctx:
            record = await resource_upsert(ctx, args.resource_id, secret, description)

    print(f"resource_id={record.resource_id}")
    print(f"description={record.description}")
    if secret is not None:
        print(f"secret={record.secret}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_create_resource(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"resource_create failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
