#!/usr/bin/env python3
"""Create or upgrade an owning professional account.

Usage:
    # Using environment variables:
    OWNER_DNI=30111222 OWNER_EMAIL=dra@example.com OWNER_PASSWORD=Secret-Pass-1 \
        python scripts/bootstrap_professional.py --name "Dra. Paz" --plan pro

    # Upgrade an existing owner to an active pro subscription:
    python scripts/bootstrap_professional.py --dni 30111222 --plan pro --status active

Environment Variables:
    OWNER_DNI, OWNER_EMAIL, OWNER_PASSWORD: defaults for the matching flags
    SHARED_FS_ROOT: store snapshot location shared with the API server
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

PLANS = ("starter", "pro")
STATUSES = ("trialing", "active", "past_due", "cancelled", "trial_expired")


async def bootstrap_professional(
    dni: str,
    *,
    name: str | None,
    email: str | None,
    password: str | None,
    plan: str,
    status: str | None,
    dry_run: bool = False,
) -> dict:
    # Import here to avoid loading config before env vars are set
    from clinicore.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_user_by_identifier(dni, "professional", include_disabled=True)

    if existing:
        if existing.owner_professional_id:
            raise ValueError(f"{dni} is a staff member, not an account owner")
        changes = {"subscription_plan": plan}
        if status:
            changes["subscription_status"] = status
        if dry_run:
            print(f"[DRY RUN] Would update {dni}: {changes}")
            return {"user_id": existing.id, "status": "dry_run"}
        runtime.store.update_user(existing.id, **changes)
        print(f"Updated professional {dni} (id: {existing.id})")
        return {"user_id": existing.id, "status": "updated", **changes}

    if not (name and email and password):
        raise ValueError("--name, --email and --password are required to create an account")
    if dry_run:
        print(f"[DRY RUN] Would create professional {dni} on plan {plan}")
        return {"user_id": None, "status": "dry_run"}

    user = await runtime.auth.register_professional(
        identifier=dni, name=name, email=email, password=password
    )
    changes = {}
    if plan != user.subscription_plan:
        changes["subscription_plan"] = plan
    if status:
        changes["subscription_status"] = status
    if changes:
        runtime.store.update_user(user.id, **changes)
    print(f"Created professional {dni} (id: {user.id})")
    return {"user_id": user.id, "status": "created", "subscription_plan": plan}


def main():
    parser = argparse.ArgumentParser(
        description="Create or upgrade a Clinicore account owner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--dni", default=os.environ.get("OWNER_DNI"), help="Identity number")
    parser.add_argument("--name", help="Display name (new accounts only)")
    parser.add_argument("--email", default=os.environ.get("OWNER_EMAIL"), help="Contact email")
    parser.add_argument(
        "--password", default=os.environ.get("OWNER_PASSWORD"), help="Password (new accounts only)"
    )
    parser.add_argument("--plan", choices=PLANS, default="starter")
    parser.add_argument("--status", choices=STATUSES, help="Subscription status override")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.dni:
        print("Error: --dni or OWNER_DNI environment variable required")
        sys.exit(1)
    if args.password is not None and len(args.password) < 8:
        print("Error: Password must be at least 8 characters")
        sys.exit(1)

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/clinicore-bootstrap")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_professional(
                args.dni.strip().upper(),
                name=args.name,
                email=args.email,
                password=args.password,
                plan=args.plan,
                status=args.status,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created. Sign in with the two-factor flow to obtain a session.")
    elif result["status"] == "updated":
        print("\nSubscription updated.")


if __name__ == "__main__":
    main()
