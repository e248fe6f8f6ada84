#!/usr/bin/env python3
"""Provision a tenant user for testing and initial setup.

Usage:
    # Using environment variables:
    USER_EMAIL=manager@example.com USER_PASSWORD='Str0ng!pass' TENANT_ID=tenant-a \\
        python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email manager@example.com --password 'Str0ng!pass' \\
        --tenant tenant-a --unit unit-101 --phone +5215512345678

Environment Variables:
    USER_EMAIL: Email for the user
    USER_PASSWORD: Password for the user (must satisfy the password policy)
    TENANT_ID: Tenant the user belongs to
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_user(
    email: str,
    password: str,
    tenant_id: str,
    *,
    unit_id: Optional[str] = None,
    phone: Optional[str] = None,
    reset_password: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create a user, or reactivate and optionally re-key an existing one.

    Returns:
        dict with user_id, email, tenant_id and status
        ('created', 'updated', 'unchanged' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tenantgate.service.identifiers import normalize_email
    from tenantgate.service.password_policy import password_violations
    from tenantgate.service.runtime import get_runtime

    violations = password_violations(password)
    if violations:
        raise ValueError("; ".join(violations))

    runtime = get_runtime()
    normalized = normalize_email(email)
    existing = runtime.store.get_user_by_email(normalized, tenant_id)

    if existing:
        needs_activation = existing.status != "active"
        if not needs_activation and not reset_password:
            print(f"User {normalized} already exists in {tenant_id} (id: {existing.id})")
            return {"user_id": existing.id, "email": normalized, "tenant_id": tenant_id, "status": "unchanged"}

        if dry_run:
            print(f"[DRY RUN] Would update existing user {normalized}")
            return {"user_id": existing.id, "email": normalized, "tenant_id": tenant_id, "status": "dry_run"}

        if needs_activation:
            await runtime.auth.update_user_status(existing.id, "active")
        if reset_password:
            revoked = await runtime.auth.reset_password(existing.id, password)
            print(f"Password reset for {normalized}; revoked {revoked} refresh token(s)")
        return {"user_id": existing.id, "email": normalized, "tenant_id": tenant_id, "status": "updated"}

    if dry_run:
        print(f"[DRY RUN] Would create user {normalized} in {tenant_id}")
        return {"user_id": None, "email": normalized, "tenant_id": tenant_id, "status": "dry_run"}

    user = await runtime.auth.register_user(normalized, password, tenant_id, unit_id, phone=phone)
    print(f"Created user: {normalized} (id: {user.id})")
    return {"user_id": user.id, "email": normalized, "tenant_id": tenant_id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Provision a tenant user for tenantgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("USER_EMAIL"),
        help="User email (or set USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("USER_PASSWORD"),
        help="User password (or set USER_PASSWORD env var)",
    )
    parser.add_argument(
        "--tenant",
        default=os.environ.get("TENANT_ID"),
        help="Tenant id (or set TENANT_ID env var)",
    )
    parser.add_argument("--unit", default=None, help="Unit within the tenant")
    parser.add_argument("--phone", default=None, help="E.164 phone number for OTP login")
    parser.add_argument(
        "--reset-password",
        action="store_true",
        help="Overwrite the password of an existing user and revoke their sessions",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for name in ("email", "password", "tenant"):
        if not getattr(args, name):
            print(f"Error: --{name} is required")
            sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("USE_MEMORY_CACHE", "true")
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_user(
                args.email,
                args.password,
                args.tenant,
                unit_id=args.unit,
                phone=args.phone,
                reset_password=args.reset_password,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Tenant: {result['tenant_id']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "updated":
        print("\nExisting user updated.")
    elif result["status"] == "unchanged":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
