#!/usr/bin/env python3
"""Mint a user and a session id for local testing of the chat API.

Usage:
    # Using environment variables:
    SESSION_EMAIL=dev@example.com python scripts/bootstrap_session.py

    # Or with command line args:
    python scripts/bootstrap_session.py --email dev@example.com --ttl-minutes 120

The printed session id goes in ``Authorization: Bearer <id>`` or the
``session_id`` header/cookie.

Environment Variables:
    SESSION_EMAIL: Email for the user
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


async def bootstrap_session(email: str, ttl_minutes: int | None = None) -> dict:
    """Create the user (or reuse it when the email is taken) and open a session."""
    # Import here to avoid loading config before env vars are set
    from formfind.service.runtime import get_runtime
    from formfind.storage.errors import ConstraintViolation

    runtime = get_runtime()

    try:
        user = await asyncio.to_thread(runtime.store.create_user, email)
        status = "created"
    except ConstraintViolation:
        user = await asyncio.to_thread(runtime.store.get_user_by_email, email)
        if user is None:
            raise
        status = "existing"

    if ttl_minutes:
        session = await asyncio.to_thread(runtime.store.create_session, user.id, ttl_minutes)
    else:
        session = await runtime.auth.create_session(user.id)

    return {
        "user_id": user.id,
        "email": email,
        "status": status,
        "session_id": session.id,
        "expires_at": session.expires_at.isoformat(),
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create a user session for FormFind",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SESSION_EMAIL"),
        help="User email (or set SESSION_EMAIL env var)",
    )
    parser.add_argument(
        "--ttl-minutes",
        type=int,
        default=None,
        help="Session lifetime in minutes (defaults to SESSION_TTL_MINUTES)",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SESSION_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/formfind-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_session(args.email, args.ttl_minutes))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    verb = "Created" if result["status"] == "created" else "Reused"
    print(f"{verb} user: {result['email']} (id: {result['user_id']})")
    print(f"  Session ID: {result['session_id']}")
    print(f"  Expires at: {result['expires_at']}")


if __name__ == "__main__":
    main()
