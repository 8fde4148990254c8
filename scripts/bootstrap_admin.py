#!/usr/bin/env python3
"""Create the first platform administrator, or promote an existing account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='S3cure-Passw0rd' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'S3cure-Passw0rd' \\
        --first-name Ada --last-name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys


def validate_password(password: str) -> bool:
    """Admins get a stricter rule than self-registration."""
    if len(password) < 12 or len(password) > 128:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def run(email: str, password: str, first_name: str, last_name: str, dry_run: bool = False) -> dict:
    # Imported late so the environment below is in place before settings load
    from antares.service.auth import bootstrap_admin
    from antares.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()
    existing = runtime.store.get_user_by_email(email)
    if dry_run:
        action = "promote" if existing else "create"
        print(f"[DRY RUN] Would {action} admin user: {email}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    user = bootstrap_admin(runtime.store, runtime.auth, email, password, first_name, last_name)
    return {
        "user_id": user.id,
        "email": email,
        "status": "promoted" if existing else "created",
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap a platform administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--first-name", default="Platform")
    parser.add_argument("--last-name", default="Admin")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be 12-128 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = run(args.email, args.password, args.first_name, args.last_name, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Admin user created: {result['email']} (id: {result['user_id']})")
    elif result["status"] == "promoted":
        print(f"Existing user promoted to admin: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
