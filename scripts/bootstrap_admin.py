#!/usr/bin/env python3
"""Create or promote an administrator account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='long passphrase' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --username admin \
        --password 'long passphrase' --role super_admin

Environment Variables:
    ADMIN_EMAIL, ADMIN_USERNAME, ADMIN_PASSWORD: defaults for the flags
    DATABASE_URL: PostgreSQL connection string (memory store if unset)
    JWT_SECRET, MFA_ENCRYPTION_KEY: required by the runtime
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str,
    username: str,
    password: str,
    role: str = "admin",
    dry_run: bool = False,
) -> dict:
    """Create ``email`` with ``role``, or promote the existing account.

    Returns:
        dict with user_id, email and status (created, promoted, already_admin, dry_run)
    """
    # Imported late so the env defaults set in main() are seen by Settings
    from aegisid.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email.strip().lower())

    if existing:
        if existing.role == role:
            print(f"User {email} already has role {role} (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to {role}")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.credentials.update(existing.id, role=role)
        print(f"Promoted existing user {email} to {role} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.credentials.create(
        username,
        email,
        password,
        role=role,
        email_verified=True,
        mfa_grace_period_end=runtime.policy.grace_end_for_new_user(role),
    )
    print(f"Created {role} user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account for AegisID",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--role", choices=["admin", "super_admin"], default="admin")
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        asyncio.run(
            bootstrap_admin(args.email, args.username, args.password, args.role, args.dry_run)
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
