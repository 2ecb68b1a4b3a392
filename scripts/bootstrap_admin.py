#!/usr/bin/env python3
"""Create an admin account, or promote an existing account to admin.

Usage:
    ADMIN_USERNAME=root ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Passw0rd' \\
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username root --email admin@example.com \\
        --password 'Str0ng!Passw0rd'

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: account to create or promote
    DATABASE_URL: Postgres connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "admin"


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from three or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(username: str, email: str, password: str, dry_run: bool = False) -> dict:
    # Imported late so the environment defaults below apply to settings
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email) or runtime.store.get_user_by_username(
        username
    )

    if existing:
        roles = runtime.store.get_user_roles(existing.id)
        if ADMIN_ROLE in roles:
            print(f"User {existing.username} already has the admin role (id: {existing.id})")
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {existing.username} to admin")
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        runtime.store.set_user_roles(existing.id, sorted(set(roles) | {ADMIN_ROLE}))
        # Outstanding tokens carry the old role claims
        runtime.store.update_security_stamp(existing.id)
        print(f"Promoted existing user {existing.username} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username} <{email}>")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.auth.register(username, email, password).unwrap()
    runtime.store.set_user_roles(user.id, [ADMIN_ROLE, "user"])
    print(f"Created admin user: {username} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Authcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/authcore-bootstrap")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.username, args.email, args.password, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
