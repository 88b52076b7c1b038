from __future__ import annotations

import argparse
import asyncio
import json
import sys

from ownerportal.persistence.db import SessionLocal
from ownerportal.services.access_gate import evaluate_user_access


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Evaluate the AI access gate for one user")
    parser.add_argument("user_id", help="User id to evaluate")
    return parser


async def _check(user_id: str) -> int:
    async with SessionLocal() as session:
        decision = await evaluate_user_access(session, user_id)
    print(json.dumps(decision.to_payload()))
    # Non-zero exit lets shell callers branch on denial.
    return 0 if decision.allowed else 2


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_check(args.user_id))
    except Exception as exc:  # noqa: BLE001 - surface lookup failures clearly
        print(f"check_access failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
