#!/usr/bin/env python3
"""Issue a legacy static API key for an automation client.

Static keys never expire and are not rotated; prefer short-lived access
tokens. The plaintext key is printed once and cannot be recovered later.

Usage:
    python scripts/issue_api_key.py --user 6f1c... --description "iOS shortcut"

Environment Variables:
    JWT_SECRET: signing key (required by the runtime)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
    MFA_SECRET_KEY: key material for encrypting TOTP seeds (optional)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def issue_api_key(user_id: str, description: str, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from sessionguard.service.runtime import get_runtime

    if dry_run:
        print(f"[DRY RUN] Would issue API key for user {user_id}")
        return {"user_id": user_id, "status": "dry_run"}

    runtime = get_runtime()
    plaintext, api_key = runtime.auth.create_api_key(user_id, description)
    return {
        "user_id": user_id,
        "key_id": api_key.id,
        "api_key": plaintext,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Issue a legacy static API key",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--user",
        default=os.environ.get("API_KEY_USER"),
        help="Identity that owns the key (or set API_KEY_USER env var)",
    )
    parser.add_argument("--description", default="", help="Free-form label for the key")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.user:
        print("Error: --user or API_KEY_USER environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/sessionguard-keys")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = issue_api_key(args.user, args.description, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAPI key created. Store it now; it will not be shown again.")
        print(f"  Key ID:  {result['key_id']}")
        print(f"  API Key: {result['api_key']}")
        print("  Warning: static keys never expire; revoke by deleting the key record.")


if __name__ == "__main__":
    main()
