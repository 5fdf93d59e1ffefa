#!/usr/bin/env python3
"""Seed, update or clear the MailShare administrator record.

Usage:
    # Replace any existing administrator with a fresh one
    python scripts/bootstrap_admin.py seed --email admin@example.com --password 'SecurePassword123!'

    # Set the step-up password used for session revocation
    python scripts/bootstrap_admin.py set-password --email admin@example.com --password 'SecurePassword123!'

    # Remove the administrator so the next login email becomes the new one.
    # Existing sessions are kept as history but deactivated.
    python scripts/bootstrap_admin.py reset

Environment Variables:
    ADMIN_EMAIL: default for --email
    ADMIN_PASSWORD: default for --password
    DATABASE_URL: PostgreSQL connection string (in-memory store if unset)
    MEMORY_STORE_PATH: JSON snapshot used by the in-memory store
"""
from __future__ import annotations

import argparse
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
    classes = [
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password),
    ]
    return sum(classes) >= 3


def seed_admin(store, hasher, email: str, password: Optional[str] = None) -> dict:
    """Clear every administrator and create ``email`` as the only one."""
    removed = store.delete_all_admins()
    password_hash = hasher.hash(password) if password else None
    admin = store.create_admin(email, password_hash=password_hash)
    return {"admin_id": admin.id, "email": admin.email, "removed": removed}


def set_admin_password(store, hasher, email: str, password: str) -> dict:
    admin = store.get_admin_by_email(email)
    if admin is None:
        raise LookupError(f"no administrator registered as {email}")
    store.set_admin_password(admin.id, hasher.hash(password))
    return {"admin_id": admin.id, "email": admin.email}


def reset_admins(store) -> dict:
    return {"removed": store.delete_all_admins()}


def _prepare_env() -> None:
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL or MEMORY_STORE_PATH for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Manage the MailShare administrator record",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    seed = sub.add_parser("seed", help="replace all administrators with one new record")
    seed.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    seed.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))

    set_pw = sub.add_parser("set-password", help="set the step-up password")
    set_pw.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    set_pw.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))

    sub.add_parser("reset", help="remove every administrator and end their sessions")

    args = parser.parse_args(argv)

    if args.command in {"seed", "set-password"} and not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if args.command == "set-password" and not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1
    password = getattr(args, "password", None)
    if password and not validate_password(password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        return 1

    _prepare_env()
    # Import here so config is read after the env above is set
    from mailshare_admin.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if args.command == "seed":
            result = seed_admin(runtime.store, runtime.password_hasher, args.email, password)
            print(f"Seeded administrator {result['email']} (id: {result['admin_id']})")
        elif args.command == "set-password":
            result = set_admin_password(
                runtime.store, runtime.password_hasher, args.email, password
            )
            print(f"Password updated for {result['email']}")
        else:
            result = reset_admins(runtime.store)
            print(f"Removed {result['removed']} administrator record(s)")
    except Exception as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
