from __future__ import annotations

import argparse
import asyncio
import sys
from urllib.parse import urlsplit, urlunsplit

from indiestore.core.logging import configure_logging
from indiestore.persistence.db import open_database
from indiestore.persistence.repos.authentication import authentication_get, profile_identifier_insert
from indiestore.persistence.repos.scopes import profile_scopes_set_all


def normalize_profile_url(value: str) -> str:
    # Profiles are http(s) URLs with a lowercased host and at least a "/" path.
    parts = urlsplit(value.strip())
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        raise ValueError(f"profile must be an http(s) URL: {value!r}")
    if parts.fragment or parts.username or parts.password:
        raise ValueError(f"profile must not carry a fragment or userinfo: {value!r}")
    netloc = parts.hostname.lower()
    if parts.port is not None:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme.lower(), netloc, parts.path or "/", parts.query, ""))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Attach a profile URL to an existing user")
    parser.add_argument("identifier", help="Existing user identifier")
    parser.add_argument("profile", help="Profile URL, e.g. https://example.com/")
    parser.add_argument("--scope", action="append", default=[], help="Bind a scope; repeatable, replaces bindings")
    return parser


async def _add_profile(args: argparse.Namespace) -> int:
    profile = normalize_profile_url(args.profile)
    async with open_database() as db:
        async with db.context() as ctx:
            if await authentication_get(ctx, args.identifier) is None:
                raise ValueError(f"no such user {args.identifier!r}")
            await profile_identifier_insert(ctx, profile, args.identifier)
            if args.scope:
                await profile_scopes_set_all(ctx, profile, args.scope)
    print(f"identifier={args.identifier}")
    print(f"profile={profile}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_add_profile(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"profile_add failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
