from __future__ import annotations

import argparse
import asyncio
import sys

from ownerportal.core.config import get_settings
from ownerportal.core.logging import configure_logging
from ownerportal.persistence.db import SessionLocal
from ownerportal.services.identity.directory import IdentityDirectoryClient
from ownerportal.services.ownership import (
    OwnerPolicy,
    ensure_owner_invariants,
    find_directory_owner_ids,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Re-assert admin roles and open access for configured owner accounts"
    )
    parser.add_argument(
        "--emails",
        help="Comma-delimited owner emails; defaults to ADMIN_OWNER_EMAILS",
        default=None,
    )
    parser.add_argument(
        "--skip-directory",
        action="store_true",
        help="Match owners by profile email only, without listing the identity directory",
    )
    return parser


async def _repair(emails: str | None, *, skip_directory: bool) -> int:
    settings = get_settings()
    raw = emails if emails is not None else settings.admin_owner_emails
    owners = OwnerPolicy.from_emails(raw.split(","))
    if not owners.emails:
        print("No owner emails configured; nothing to do.", file=sys.stderr)
        return 1
    directory_ids: list[str] = []
    if not skip_directory:
        directory = IdentityDirectoryClient(settings)
        try:
            directory_ids = await find_directory_owner_ids(
                directory,
                owners,
                page_size=settings.admin_directory_page_size,
                max_pages=settings.admin_directory_max_pages,
            )
        finally:
            await directory.aclose()
    async with SessionLocal() as session:
        owner_ids = await ensure_owner_invariants(session, owners, verified_owner_ids=directory_ids)
    print(f"Owner accounts checked: {len(owner_ids)} of {len(owners.emails)} configured")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_repair(args.emails, skip_directory=args.skip_directory))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"repair_owner_access failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
