#!/usr/bin/env python3
"""Create the first admin account, or promote an existing user to admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Passw0rd' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Passw0rd'
    python scripts/bootstrap_admin.py --email admin@example.com --generate-password

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (checked against the password policy)
    DATABASE_URL: PostgreSQL connection string (the memory store is used when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: Optional[str] = None, dry_run: bool = False) -> dict:
    """Create or promote an admin.

    A random password is generated when none is given; it is returned under
    ``generated_password`` and never stored in clear.

    Returns:
        dict with user_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # deferred so the environment defaults below are in place first
    from framegate.service.passwords import generate_secure_password
    from framegate.service.runtime import get_runtime
    from framegate.storage.models import Role

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role is Role.ADMIN:
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user(existing.id, role=Role.ADMIN)
        print(f"Promoted existing user {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    generated = password is None
    if generated:
        password = generate_secure_password()

    if dry_run:
        strength = runtime.passwords.validate_strength(password)
        print(
            f"[DRY RUN] Would create admin user: {email} "
            f"(password strength: {strength.label}, ~{strength.entropy:.0f} bits)"
        )
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.create_account(
        email, password, role=Role.ADMIN, is_email_verified=True
    )
    print(f"Created admin user: {email} (id: {user.id})")
    result = {"user_id": user.id, "email": user.email, "status": "created"}
    if generated:
        result["generated_password"] = password
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for FrameGate",
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
        "--generate-password",
        action="store_true",
        help="Generate a random password when none is given; printed once",
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
    if not args.password and not args.generate_password:
        print("Error: --password, ADMIN_PASSWORD or --generate-password required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/framegate-bootstrap")
        print("Note: Using the memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from framegate.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password or None, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for line in exc.detail.get("errors", []):
            print(f"  - {line}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        if "generated_password" in result:
            print(f"  Password: {result['generated_password']}  (shown once; store it now)")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
