#!/usr/bin/env python3
"""Revoke tokens from the command line.

Usage:
    # Revoke one key:
    python scripts/revoke_tokens.py --token-id 3b6a27bc...

    # Revoke every key bound to a GitHub account:
    python scripts/revoke_tokens.py --ghid 583231

    # List what would be revoked:
    python scripts/revoke_tokens.py --ghid 583231 --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE / MEMORY_STORE_PATH: revoke inside a persisted memory store instead
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def revoke_tokens(
    token_id: str | None = None,
    ghid: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Deactivate the selected tokens.

    Returns:
        dict with the affected token ids and the number of rows changed
    """
    # Import here to avoid loading config before env vars are set
    from keygrant.config import Settings
    from keygrant.service.crypto import TokenId
    from keygrant.service.runtime import Runtime

    runtime = Runtime(Settings.from_env())
    try:
        if token_id is not None:
            parsed = TokenId.parse(token_id)
            if parsed is None:
                raise ValueError("token id must be 64 hex characters")
            token = runtime.store.get_token(parsed.hex)
            candidates = [token] if token else []
        else:
            candidates = runtime.store.list_tokens_for_identity(str(ghid))
        active_ids = [t.id for t in candidates if t.active]

        if dry_run:
            for tid in active_ids:
                print(f"[DRY RUN] Would revoke {tid}")
            return {"token_ids": active_ids, "revoked": 0, "status": "dry_run"}

        if token_id is not None:
            revoked = runtime.revocation.revoke_by_token(token_id)
        else:
            revoked = runtime.revocation.revoke_by_identity(str(ghid))
        return {"token_ids": active_ids, "revoked": revoked, "status": "revoked"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Revoke keygrant tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--token-id", help="Hex public key of the token to revoke")
    target.add_argument("--ghid", help="GitHub account id whose tokens to revoke")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if os.environ.get("USE_MEMORY_STORE", "").lower() in {"1", "true", "yes", "on"}:
        if not os.environ.get("MEMORY_STORE_PATH"):
            print("Error: USE_MEMORY_STORE needs MEMORY_STORE_PATH to revoke anything durable")
            sys.exit(1)
    elif not os.environ.get("DATABASE_URL"):
        print("Note: DATABASE_URL not set, using the default local database")

    try:
        result = asyncio.run(revoke_tokens(args.token_id, args.ghid, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "revoked":
        print(f"Revoked {result['revoked']} token(s)")
        for tid in result["token_ids"]:
            print(f"  {tid}")
    elif not result["token_ids"]:
        print("\nNo active tokens matched.")


if __name__ == "__main__":
    main()
