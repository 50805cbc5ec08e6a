#!/usr/bin/env python3
"""Create or update an administrator identity in the configured store.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secure123 \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com --password Secure123

Environment Variables:
    ADMIN_USERNAME: Username for the administrator
    ADMIN_EMAIL: Email for the administrator (receives two-factor codes)
    ADMIN_PASSWORD: Password (at least 8 characters with a letter and a digit)
    REDIS_URL: Redis connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
import uuid
from dataclasses import replace
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    runtime,
    username: str,
    email: str,
    password: str,
    *,
    display_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create a new admin identity or promote and re-key an existing one.

    Returns:
        dict with identity_id, username and status
        ('created', 'promoted', 'updated' or 'dry_run')
    """
    from authcore.service.validation import check_password_strength
    from authcore.storage.models import Credential, Identity

    settings = runtime.settings
    check_password_strength(
        password,
        min_length=settings.password_min_length,
        max_length=settings.password_max_length,
    )

    existing = runtime.store.get_identity_by_username(username)
    if dry_run:
        action = "promote" if existing and existing.role != "admin" else (
            "update" if existing else "create"
        )
        print(f"[DRY RUN] Would {action} admin identity: {username}")
        return {
            "identity_id": existing.id if existing else None,
            "username": username,
            "status": "dry_run",
        }

    if existing:
        status = "updated" if existing.role == "admin" else "promoted"
        identity = replace(
            existing,
            role="admin",
            enabled=True,
            email=email,
            display_name=display_name or existing.display_name,
        )
    else:
        status = "created"
        identity = Identity(
            id=str(uuid.uuid4()),
            username=username,
            display_name=display_name or username,
            email=email,
            role="admin",
            enabled=True,
        )

    salt = runtime.hasher.generate_salt()
    credential = Credential(
        identity_id=identity.id,
        password_hash=runtime.hasher.hash(password, salt),
        password_salt=salt,
    )
    runtime.store.create_identity(identity, credential)
    print(f"Admin identity {status}: {username} (id: {identity.id})")
    return {"identity_id": identity.id, "username": username, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator identity for authcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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
    parser.add_argument("--display-name", default=None, help="Display name")
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

    if not os.environ.get("REDIS_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set REDIS_URL for persistence)")
    else:
        os.environ.setdefault("USE_MEMORY_STORE", "false")

    from authcore.service.errors import ServiceError
    from authcore.service.runtime import get_runtime
    from authcore.storage.errors import StoreError

    try:
        result = bootstrap_admin(
            get_runtime(),
            args.username,
            args.email,
            args.password,
            display_name=args.display_name,
            dry_run=args.dry_run,
        )
    except (ServiceError, StoreError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  Identity ID: {result['identity_id']}")
    elif result["status"] == "promoted":
        print("\nExisting identity promoted to admin!")
    elif result["status"] == "updated":
        print("\nAdmin credentials updated.")


if __name__ == "__main__":
    main()
