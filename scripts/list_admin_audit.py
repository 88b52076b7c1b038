from __future__ import annotations

import argparse
import asyncio
import json
import sys

from ownerportal.persistence.db import SessionLocal
from ownerportal.persistence.repos.audit import list_actions


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="List recent owner portal admin actions")
    parser.add_argument("--user", default=None, help="Only actions that targeted this user id")
    parser.add_argument("--action", default=None, help="Only this action, e.g. set-role")
    parser.add_argument("--limit", type=int, default=50, help="Maximum rows to print")
    return parser


async def _list_audit(args: argparse.Namespace) -> int:
    # Metadata was redacted at write time, so it is printed as stored.
    async with SessionLocal() as session:
        rows = await list_actions(
            session,
            resource_id=args.user,
            action=args.action,
            limit=max(1, int(args.limit)),
        )

    print("id\tcreated_at\tactor_id\taction\tresource_id\tip_address\tmetadata")
    for row in rows:
        print(
            f"{row.id}\t{row.created_at.isoformat() if row.created_at else ''}\t"
            f"{row.actor_id or ''}\t{row.action}\t{row.resource_id or ''}\t"
            f"{row.ip_address or ''}\t{json.dumps(row.metadata_json or {}, sort_keys=True)}"
        )
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_list_audit(args))
    except Exception as exc:  # noqa: BLE001 - show full operator-facing error context.
        print(f"list_admin_audit failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
