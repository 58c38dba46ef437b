from __future__ import annotations

import argparse
import asyncio
import json
import sys

from pushrelay.core.logging import configure_logging
from pushrelay.domain.tenants import RateLimitPolicy
from pushrelay.persistence.db import create_all, dispose_engine, get_engine, get_session_factory
from pushrelay.persistence.repos.tenants import SqlTenantDirectory
from pushrelay.services.tenants import policy_from_settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Register a push relay tenant (app)")
    parser.add_argument("--owner", required=True, help="Owner identity; stored lower-cased")
    parser.add_argument("--name", required=True, help="Human-readable app name")
    parser.add_argument("--max-per-minute", type=int, default=None, help="Send calls allowed per minute")
    parser.add_argument("--max-per-day", type=int, default=None, help="Daily send quota (recorded only)")
    parser.add_argument("--max-subscriptions", type=int, default=None, help="Soft subscription ceiling")
    parser.add_argument("--metadata", default=None, help="Optional JSON object stored with the app")
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create tables first (local bootstrap only)",
    )
    return parser


def _policy_from_args(args: argparse.Namespace) -> RateLimitPolicy | None:
    if args.max_per_minute is None and args.max_per_day is None and args.max_subscriptions is None:
        return None
    return policy_from_settings(
        max_per_minute=args.max_per_minute,
        max_per_day=args.max_per_day,
        max_subscriptions=args.max_subscriptions,
    )


async def _create_tenant(args: argparse.Namespace) -> int:
    metadata = json.loads(args.metadata) if args.metadata else None
    if metadata is not None and not isinstance(metadata, dict):
        raise ValueError("--metadata must be a JSON object")
    try:
        if args.create_schema:
            await create_all(get_engine())
        directory = SqlTenantDirectory(get_session_factory())
        tenant, credential = await directory.register(
            args.owner,
            args.name,
            metadata=metadata,
            policy=_policy_from_args(args),
        )
    finally:
        await dispose_engine()

    # The raw credential is shown once and never stored.
    print(f"tenant_id={tenant.id}")
    print(f"owner={tenant.owner}")
    print(f"vapid_public_key={tenant.vapid_public_key}")
    print(f"api_key={credential}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_tenant(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
