#!/usr/bin/env python3
"""Create the first administrator account.

ADMIN cannot be requested through a role application, so the first
administrator has to be created out of band with this script.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='SecurePassw0rd!' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'SecurePassw0rd!' --name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    ADMIN_NAME: Display name (defaults to "Administrator")
    STORAGE_BACKEND / DATABASE_URL / REDIS_URL: where the account is written.
        Without DATABASE_URL or STORAGE_BACKEND a persisted memory store under
        SHARED_FS_ROOT is used.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from findclass.api.schemas import _validate_password_strength  # noqa: E402


def validate_password(password: str) -> str | None:
    """Return why the password fails the registration policy, or None."""
    try:
        _validate_password_strength(password)
    except ValueError as exc:
        return str(exc)
    return None


def bootstrap_admin(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Create an ADMIN account unless the email is already registered.

    Returns:
        dict with user_id, email, and status ('created', 'already_admin',
        'exists' or 'dry_run')
    """
    # Import here so the environment above is in place before settings load
    from findclass.service.runtime import get_runtime
    from findclass.storage.models import UserRole

    runtime = get_runtime()
    try:
        existing = runtime.credentials.find_by_email(email)
        if existing:
            if existing.role is UserRole.ADMIN:
                print(f"User {existing.email} already exists as admin (id: {existing.id})")
                return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
            # Roles of existing accounts only change through an approved application
            print(f"User {existing.email} already exists with role {existing.role.value}; not promoting")
            return {"user_id": existing.id, "email": existing.email, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        user = runtime.credentials.register(email, password, name, UserRole.ADMIN)
        print(f"Created admin user: {user.email} (id: {user.id})")
        return {"user_id": user.id, "email": user.email, "status": "created"}
    finally:
        runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for FindClass",
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
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Display name (or set ADMIN_NAME env var)",
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

    problem = validate_password(args.password)
    if problem:
        print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL") and not os.environ.get("STORAGE_BACKEND"):
        os.environ["STORAGE_BACKEND"] = "memory"
        os.environ["PERSIST_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    elif result["status"] == "exists":
        sys.exit(2)


if __name__ == "__main__":
    main()
