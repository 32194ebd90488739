from __future__ import annotations

import argparse
import asyncio
import sys

from indiestore.core.logging import configure_logging
from indiestore.persistence.db import open_database
from indiestore.persistence.repos.scopes import scope_upsert


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Add or describe a scope offered to every profile")
    parser.add_argument("scope", help="Scope name")
    parser.add_argument("description", nargs="*", help="Description shown on consent")
    parser.add_argument("--application", default=None, help="Application grouping, e.g. MicroPub")
    return parser


async def _add_scope(args: argparse.Namespace) -> int:
    description = " ".join(args.description) if args.description else None
    async with open_database() as db:
        async with db.context() as ctx:
            # Operator-added scopes survive the unused-scope cleanup.
            await scope_upsert(ctx, args.scope, args.application, description, manually_added=True)
    print(f"scope={args.scope}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_add_scope(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"scope_add failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
