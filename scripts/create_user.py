#!/usr/bin/env python3
"""Create a local (password) account from the command line.

Usage:
    python scripts/create_user.py --email alice@example.com --username alice --password Passw0rdX

    # Password can come from the environment instead of argv:
    IDBRIDGE_PASSWORD=Passw0rdX python scripts/create_user.py --email alice@example.com --username alice

Environment Variables:
    JWT_ACCESS_SECRET / JWT_REFRESH_SECRET: signing secrets (required)
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
    IDBRIDGE_PASSWORD: password for the new account
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(
    email: str,
    username: str,
    password: str,
    display_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Register the account, or report why it cannot be created.

    Returns:
        dict with user_id, email and status ('created', 'exists' or 'dry_run')
    """
    # Import late so the environment defaults below apply to settings
    from idbridge.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)
    if existing:
        print(f"User {existing.email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": existing.email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {email} ({username})")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.resolver.resolve_local_registration(
        email, username, display_name, password
    )
    print(f"Created user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a local idbridge account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", required=True, help="Account email")
    parser.add_argument("--username", required=True, help="Account username")
    parser.add_argument("--display-name", default=None, help="Display name")
    parser.add_argument(
        "--password",
        default=os.environ.get("IDBRIDGE_PASSWORD"),
        help="Account password (or set IDBRIDGE_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.password:
        print("Error: --password or IDBRIDGE_PASSWORD environment variable required")
        sys.exit(1)

    from pydantic import ValidationError as RequestError

    from idbridge.api.schemas import RegisterRequest

    try:
        request = RegisterRequest(
            email=args.email,
            username=args.username,
            display_name=args.display_name,
            password=args.password,
        )
    except RequestError as exc:
        for err in exc.errors():
            print(f"Error: {err['msg']}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from idbridge.service.errors import ServiceError

    try:
        asyncio.run(
            create_user(
                request.email,
                request.username,
                request.password,
                request.display_name,
                args.dry_run,
            )
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
