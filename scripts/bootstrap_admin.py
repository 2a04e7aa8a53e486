#!/usr/bin/env python3
"""Create or promote the admin account allowed to force-logout other users.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_NAME="Site Admin" python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --name "Site Admin"

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_NAME: Display name used when the account has to be created
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(store, email: str, name: str, dry_run: bool = False) -> dict:
    """Create ``email`` as an admin, or promote the existing account.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    email = email.strip().lower()
    existing_user = store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == "admin":
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        store.update_user_role(existing_user.id, "admin")
        if not existing_user.is_active:
            store.set_user_active(existing_user.id, True)
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = store.create_user(email, name, role="admin")
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def _open_store():
    # Import here so env defaults are in place before settings load
    from otplogin.config import get_settings
    from otplogin.storage.memory import MemoryStore
    from otplogin.storage.postgres import PostgresStore

    settings = get_settings()
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.data_dir)
    return PostgresStore(settings.database_url)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for OTP Login",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Admin display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email or "@" not in args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not 2 <= len(args.name.strip()) <= 50:
        print("Error: --name must be between 2 and 50 characters")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the memory store under DATA_DIR (set DATABASE_URL for Postgres)")

    store = _open_store()
    try:
        result = bootstrap_admin(store, args.email, args.name.strip(), args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        return 1
    finally:
        store.close()

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
