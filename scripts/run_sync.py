#!/usr/bin/env python3
"""
Run one campaign sync from the command line (same path the cron endpoint uses).

Run from the project root:
  python -m scripts.run_sync
  python -m scripts.run_sync --status
"""

import argparse
import asyncio
import json
import sys

from adsync.database import async_session, init_db
from adsync.services.sync_service import get_sync_status, sync_campaign_data
from adsync.services.token_service import get_active_credential


async def show_status() -> None:
    async with async_session() as db:
        cred = await get_active_credential(db)
        status = await get_sync_status(db, cred.profile_id if cred else None)
    print(json.dumps(status, indent=2))


async def run() -> int:
    await init_db()
    result = await sync_campaign_data(async_session, actor_type="system", actor_id="cli")
    print(json.dumps(result, indent=2))
    return 0 if result["success"] else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync campaigns and metrics from Amazon Ads")
    parser.add_argument("--status", action="store_true", help="Only print the last sync status")
    args = parser.parse_args()

    if args.status:
        asyncio.run(show_status())
        return
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
