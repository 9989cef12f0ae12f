#!/usr/bin/env python3
"""Create or promote an active administrator account.

Usage:
    ADMIN_EMAIL=chief@example.com ADMIN_PASSWORD='long enough secret' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email chief@example.com --password 'long enough secret'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (at least 10 characters)
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
"""
from __future__ import annotations

import argparse
import os
import sys


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an active admin, or promote and activate an existing account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here so the env defaults below are in place before settings load
    from pilotlog.service.passwords import hash_password
    from pilotlog.service.runtime import get_runtime
    from pilotlog.storage.models import UserRole, UserStatus

    store = get_runtime().store
    email = email.strip().lower()
    existing = store.get_user_by_email(email)

    if existing:
        if existing.is_admin and existing.is_active:
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        store.update_user_role(existing.id, UserRole.ADMIN)
        store.update_user_status(existing.id, UserStatus.ACTIVE)
        print(f"Promoted existing user {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = store.create_user(email, role=UserRole.ADMIN, status=UserStatus.ACTIVE)
    pwd_hash, algo = hash_password(password)
    store.save_password(user.id, pwd_hash, algo)
    store.record_audit_event(
        "ADMIN_BOOTSTRAP", user_id=user.id, entity_type="User", entity_id=user.id
    )
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for pilotlog",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
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

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    from pilotlog.service.passwords import MIN_PASSWORD_LENGTH

    if len(args.password) < MIN_PASSWORD_LENGTH:
        print(f"Error: Password must be at least {MIN_PASSWORD_LENGTH} characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
