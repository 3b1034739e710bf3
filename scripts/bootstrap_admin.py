#!/usr/bin/env python3
"""Create the first task manager admin, or promote an existing account.

    python scripts/bootstrap_admin.py --email root@example.com --password 'Secure@Pass123'
    ADMIN_EMAIL=root@example.com ADMIN_PASSWORD='Secure@Pass123' python scripts/bootstrap_admin.py

The account is created with its email already verified. Without DATABASE_URL
the in-memory store under SHARED_FS_ROOT is used, which is only useful for a
local trial run.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

_OUTCOMES = {
    "created": "Created admin {email} (id: {user_id})",
    "promoted": "Promoted {email} to admin (id: {user_id})",
    "already_admin": "{email} is already an admin (id: {user_id}); nothing to do",
    "dry_run": "[dry run] no changes written for {email}",
}


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    first_name: str = "System",
    last_name: str = "Admin",
    dry_run: bool = False,
    runtime=None,
) -> dict:
    """Ensure ``email`` belongs to an admin.

    Returns ``{"user_id", "email", "status"}`` where status is one of
    ``created``, ``promoted``, ``already_admin`` or ``dry_run``.
    """
    # Deferred so main() can adjust the environment before settings load
    from taskgate.config import get_settings
    from taskgate.service.runtime import build_runtime

    owns_runtime = runtime is None
    if owns_runtime:
        runtime = build_runtime(get_settings())

    def outcome(status: str, user_id) -> dict:
        return {"user_id": user_id, "email": email, "status": status}

    try:
        user = runtime.store.get_user_by_email(email)
        if user is not None:
            if user.role == "admin":
                return outcome("already_admin", user.id)
            if dry_run:
                return outcome("dry_run", user.id)
            await runtime.auth.set_role(user.id, "admin")
            return outcome("promoted", user.id)

        if dry_run:
            return outcome("dry_run", None)
        registered = await runtime.auth.register(
            email, password, first_name, last_name, role="admin"
        )
        await runtime.auth.verify_email(registered.verification_token)
        return outcome("created", registered.user.id)
    finally:
        if owns_runtime:
            await runtime.close()


def _parse_args(argv):
    parser = argparse.ArgumentParser(
        description=__doc__.splitlines()[0],
        epilog="ADMIN_EMAIL and ADMIN_PASSWORD are read when the flags are omitted.",
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--first-name", default="System")
    parser.add_argument("--last-name", default="Admin")
    parser.add_argument(
        "--dry-run", action="store_true", help="report what would change and exit"
    )
    args = parser.parse_args(argv)
    if not args.email or not args.password:
        parser.error("an email and a password are required (flags or ADMIN_EMAIL/ADMIN_PASSWORD)")
    return args


def main(argv=None) -> None:
    args = _parse_args(argv)

    from taskgate.api.schemas import validate_password_strength

    try:
        validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/taskgate-bootstrap")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: DATABASE_URL is not set, using the in-memory store")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                dry_run=args.dry_run,
            )
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    print(_OUTCOMES[result["status"]].format(**result))


if __name__ == "__main__":
    main()
