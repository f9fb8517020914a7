#!/usr/bin/env python3
"""
Operational commands for the IP Licensing API.

Run with:
    python scripts/manage.py create-admin --email ops@example.com --name "Ops" --password ...
    python scripts/manage.py enqueue-maintenance

Settings (DATABASE_URL etc.) come from the environment or .env, as for the API.
`enqueue-maintenance` is meant to be run daily from cron; its jobs carry a
per-day idempotency key so repeated runs on the same day are no-ops.
"""
import argparse
import asyncio
import getpass
import sys

from sqlalchemy import select

from iplicensing.auth.passwords import hash_password
from iplicensing.database import close_db, get_db_context, init_db
from iplicensing.jobs.queue import EnqueueJobRequest, enqueue_job
from iplicensing.models.user import User, UserRole
from iplicensing.utils.time import utc_now

MAINTENANCE_JOBS = [
    "license.expiry_check",
    "notification.cleanup",
    "jobs.metrics_cleanup",
]


async def create_admin(email: str, name: str, password: str) -> int:
    await init_db()
    async with get_db_context() as db:
        user = await db.scalar(select(User).where(User.email == email.lower()))
        if user:
            user.role = UserRole.ADMIN
            user.is_active = True
            print(f"Promoted existing user {user.email} to ADMIN")
        else:
            user = User(
                email=email.lower(),
                name=name,
                password_hash=hash_password(password),
                role=UserRole.ADMIN,
            )
            db.add(user)
            print(f"Created admin {email.lower()}")
    return 0


async def enqueue_maintenance() -> int:
    day = utc_now().strftime("%Y-%m-%d")
    async with get_db_context() as db:
        for job_type in MAINTENANCE_JOBS:
            job_id = await enqueue_job(
                db,
                EnqueueJobRequest(job_type=job_type, payload={}, idempotency_key=f"{job_type}:{day}"),
            )
            print(f"{job_type}: {job_id}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="IP Licensing API management commands")
    subcommands = parser.add_subparsers(dest="command", required=True)

    admin = subcommands.add_parser("create-admin", help="Create or promote an admin account")
    admin.add_argument("--email", required=True)
    admin.add_argument("--name", default="Administrator")
    admin.add_argument("--password", help="Prompted for when omitted")

    subcommands.add_parser("enqueue-maintenance", help="Queue the daily housekeeping jobs")

    args = parser.parse_args()

    async def run() -> int:
        try:
            if args.command == "create-admin":
                password = args.password or getpass.getpass("Password: ")
                if len(password) < 8:
                    print("ERROR: password must be at least 8 characters")
                    return 1
                return await create_admin(args.email, args.name, password)
            return await enqueue_maintenance()
        finally:
            await close_db()

    return asyncio.run(run())


if __name__ == "__main__":
    sys.exit(main())
