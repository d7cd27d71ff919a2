#!/usr/bin/env python3
"""
Issue an agent API key. The plain key is printed once and never stored.

Run from the project root:
  python -m scripts.create_agent_key "Nightly optimizer"
  python -m scripts.create_agent_key --revoke <key-id>
"""

import argparse
import asyncio
import sys
import uuid

from adsync.database import async_session, init_db
from adsync.services.agent_key_service import create_api_key, revoke_api_key


async def create(name: str) -> None:
    await init_db()
    async with async_session() as db:
        key, plain_key = await create_api_key(db, name, actor_type="system", actor_id="cli")
        await db.commit()
    print(f"Created agent key {key.id} ({key.key_preview})")
    print(f"X-Agent-Key: {plain_key}")
    print("Store it now; it cannot be shown again.")


async def revoke(key_id: str) -> int:
    async with async_session() as db:
        key = await revoke_api_key(db, uuid.UUID(key_id), actor_type="system", actor_id="cli")
        await db.commit()
    if key is None:
        print(f"No agent key with id {key_id}")
        return 1
    print(f"Revoked {key.name} ({key.key_preview})")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Manage agent API keys")
    parser.add_argument("name", nargs="?", help="Label for the new key")
    parser.add_argument("--revoke", metavar="KEY_ID", help="Revoke an existing key instead")
    args = parser.parse_args()

    if args.revoke:
        sys.exit(asyncio.run(revoke(args.revoke)))
    if not args.name:
        parser.error("name is required when creating a key")
    asyncio.run(create(args.name))


if __name__ == "__main__":
    main()
