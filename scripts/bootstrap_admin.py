#!/usr/bin/env python3
"""Provision roles, configured tenants and the admin identity.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user (default admin@devlab.io)
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    TENANT_ORGANISATIONS / TENANT_ESTABLISHMENTS: tenants to seed
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3 or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def describe(email: str) -> dict:
    """Report what a bootstrap would change without writing anything."""
    from tenantauth.service.runtime import ADMIN_ROLE, get_runtime

    runtime = get_runtime()
    user = runtime.users.find_by_email(email)
    account = runtime.accounts.find_by_user_and_tenant(user.id) if user else None
    return {
        "email": email,
        "user_exists": user is not None,
        "is_admin": bool(account and ADMIN_ROLE in account.role_names),
        "admin_role_exists": runtime.roles.find_by_name(ADMIN_ROLE) is not None,
    }


async def bootstrap(email: str, password: str, sign_in: bool) -> dict:
    from tenantauth.requests import SignInRequest
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    result = runtime.bootstrap()
    if sign_in:
        response = await runtime.auth.sign_in(SignInRequest(email=email, password=password))
        result["access_token"] = response.jwt.access_token
        result["user_id"] = response.user.id
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap roles, tenants and the admin user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL", "admin@devlab.io"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--sign-in",
        action="store_true",
        help="Sign the admin in after bootstrapping and print the access token",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the current state without making changes",
    )

    args = parser.parse_args()

    if not args.password and not args.dry_run:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if args.password and not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    os.environ["ADMIN_EMAIL"] = args.email
    if args.password:
        os.environ["ADMIN_PASSWORD"] = args.password
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from tenantauth.service.errors import ServiceError
    from tenantauth.storage.errors import ConstraintViolation

    try:
        if args.dry_run:
            state = describe(args.email)
            print(f"[DRY RUN] {state}")
            return
        result = asyncio.run(bootstrap(args.email, args.password, args.sign_in))
    except (ServiceError, ConstraintViolation) as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    print(
        f"Seeded {result['organisations_created']} organisation(s) and "
        f"{result['establishments_created']} establishment(s)"
    )
    print(f"Admin {args.email}: {result['admin']}")
    if result.get("access_token"):
        print(f"  User ID: {result['user_id']}")
        print(f"  Access Token: {result['access_token'][:50]}...")


if __name__ == "__main__":
    main()
