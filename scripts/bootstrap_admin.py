#!/usr/bin/env python3
"""Create the first admin account, or promote an existing account to admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secure-Passw0rd python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password Secure-Passw0rd

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from three or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    # config reads the environment at import time
    from credvault.config import get_settings
    from credvault.service.passwords import PasswordHasher
    from credvault.service.runtime import build_store
    from credvault.storage.models import Role

    store = build_store(get_settings())
    existing = store.get_user_by_email(email)

    if existing:
        if existing.role == Role.ADMIN.value:
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        store.update_user_role(existing.id, Role.ADMIN.value)
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = store.create_user(email, PasswordHasher().hash(password), role=Role.ADMIN.value)
    store.mark_email_verified(user.id)
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Credvault",
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
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/credvault-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except (RuntimeError, OSError) as exc:
        print(f"Error: {exc}")
        return 1

    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed - user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
