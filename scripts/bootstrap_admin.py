#!/usr/bin/env python3
"""Bootstrap an admin user in the default organization.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    AUTH_SESSION_SECRET: Must match the deployment; the password pepper derives from it when
        AUTH_PASSWORD_PEPPER is unset
    DATABASE_URL: PostgreSQL connection string (required; only --dry-run may omit it, and then
        runs against a throwaway in-memory store)
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
    create_schema: bool = True,
    dry_run: bool = False,
) -> dict:
    """Create an admin, or promote an existing user to admin of the default organization.

    Returns:
        dict with user_id, email, client_id and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tenantgate.service.auth import normalize_email
    from tenantgate.service.rbac import ROLE_ADMIN, normalize_role
    from tenantgate.service.runtime import get_runtime
    from tenantgate.storage.models import STATUS_ACTIVE

    runtime = get_runtime()
    store = runtime.store
    normalized = normalize_email(email)

    await store.open(verify_schema=False)
    try:
        if create_schema and not dry_run:
            await store.ensure_schema()
        client_id = runtime.settings.default_client_id

        existing_user = await store.get_user_by_email(normalized)
        if existing_user:
            membership = await store.get_membership(existing_user.id, client_id)
            if (
                membership is not None
                and membership.is_active
                and normalize_role(membership.role) == ROLE_ADMIN
            ):
                print(f"User {normalized} already exists as admin (id: {existing_user.id})")
                return {
                    "user_id": existing_user.id,
                    "email": normalized,
                    "client_id": client_id,
                    "status": "already_admin",
                }
            if dry_run:
                print(f"[DRY RUN] Would promote existing user {normalized} to admin")
                return {
                    "user_id": existing_user.id,
                    "email": normalized,
                    "client_id": client_id,
                    "status": "dry_run",
                }
            await runtime.auth.ensure_default_client()
            await store.ensure_membership(
                existing_user.id,
                client_id,
                role=ROLE_ADMIN,
                status=STATUS_ACTIVE,
                is_default=True,
                actor_id=existing_user.id,
            )
            print(f"Promoted existing user {normalized} to admin (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": normalized,
                "client_id": client_id,
                "status": "promoted",
            }

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {normalized}")
            return {"user_id": None, "email": normalized, "client_id": client_id, "status": "dry_run"}

        if runtime.passwords is None:
            raise RuntimeError("AUTH_SESSION_SECRET must be set to hash the admin password")
        client = await runtime.auth.ensure_default_client()
        user = await store.create_user(
            normalized,
            await runtime.passwords.hash_async(password),
            client_id=client.id,
            role=ROLE_ADMIN,
            first_name=first_name,
            last_name=last_name,
        )
        await store.ensure_membership(
            user.id,
            client.id,
            role=ROLE_ADMIN,
            status=STATUS_ACTIVE,
            is_default=True,
            actor_id=user.id,
        )
        print(f"Created admin user: {normalized} (id: {user.id})")
        return {
            "user_id": user.id,
            "email": normalized,
            "client_id": client.id,
            "status": "created",
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for tenantgate",
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
    parser.add_argument("--first-name", default=None, help="Optional first name")
    parser.add_argument("--last-name", default=None, help="Optional last name")
    parser.add_argument(
        "--skip-schema",
        action="store_true",
        help="Do not create missing tables before bootstrapping",
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("AUTH_SESSION_SECRET"):
        print("Error: AUTH_SESSION_SECRET must be set to the deployment's secret")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        if not args.dry_run:
            print("Error: DATABASE_URL is required; an in-memory admin would vanish on exit")
            sys.exit(1)
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: DATABASE_URL is unset; dry run uses a throwaway in-memory store")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                create_schema=not args.skip_schema,
                dry_run=args.dry_run,
            )
        )

        if result["status"] == "created":
            print("\nAdmin user created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
            print(f"  Organization: {result['client_id']}")
        elif result["status"] == "promoted":
            print("\nExisting user promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - user is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
