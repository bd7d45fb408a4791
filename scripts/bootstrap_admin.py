#!/usr/bin/env python3
"""Bootstrap an administrator account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! --name "Ops"

    # Seed a standard user instead:
    python scripts/bootstrap_admin.py --namespace user --email player@example.com --password ...

Environment Variables:
    ADMIN_EMAIL: Email for the account
    ADMIN_PASSWORD: Password for the account (must meet complexity requirements)
    ADMIN_NAME: Display name (defaults to the email's local part)
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_identity(
    email: str,
    password: str,
    *,
    name: Optional[str] = None,
    namespace: str = "admin",
    dry_run: bool = False,
    runtime=None,
) -> dict:
    """Create an account unless the email is already taken.

    Returns:
        dict with identity_id, email, namespace and status
        ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from gatehide.config import get_settings
    from gatehide.service.runtime import Runtime
    from gatehide.storage.models import Namespace

    runtime = runtime or Runtime(get_settings())
    target = Namespace(namespace)
    display_name = name or email.split("@", 1)[0]

    for existing in runtime.auth.credentials.lookup_all(email):
        print(
            f"Account {email} already exists in namespace "
            f"'{existing.namespace.value}' (id: {existing.id})"
        )
        return {
            "identity_id": existing.id,
            "email": existing.email,
            "namespace": existing.namespace.value,
            "status": "exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would create {target.value} account: {email}")
        return {
            "identity_id": None,
            "email": email,
            "namespace": target.value,
            "status": "dry_run",
        }

    identity = await runtime.auth.create_identity(target, email, display_name, password)
    print(f"Created {target.value} account: {identity.email} (id: {identity.id})")
    return {
        "identity_id": identity.id,
        "email": identity.email,
        "namespace": target.value,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account for GateHide",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Account email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Account password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME"),
        help="Display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--namespace",
        choices=["admin", "user"],
        default="admin",
        help="Which account table to create the identity in",
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

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_identity(
                args.email,
                args.password,
                name=args.name,
                namespace=args.namespace,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Namespace: {result['namespace']}")
        print(f"  ID: {result['identity_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - the email is already registered.")


if __name__ == "__main__":
    main()
