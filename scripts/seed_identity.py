from __future__ import annotations

import argparse
import asyncio
import sys

from sisfo_identity.core.errors import IdentityError
from sisfo_identity.core.logging import configure_logging
from sisfo_identity.persistence.db import SessionLocal
from sisfo_identity.persistence.repos import users as users_repo
from sisfo_identity.services import identity_admin


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed system roles and an optional admin for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--admin-email", default=None, help="Create or reuse this admin account")
    parser.add_argument("--admin-password", default=None, help="Password for a newly created admin")
    return parser


async def _seed(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        roles = await identity_admin.seed_system_roles(session, tenant_id=args.tenant)
        if args.admin_email:
            user = await users_repo.get_user_by_email(session, tenant_id=args.tenant, email=args.admin_email)
            if user is None:
                if not args.admin_password:
                    print("--admin-password is required to create the admin", file=sys.stderr)
                    return 2
                user = await identity_admin.register_user(
                    session,
                    tenant_id=args.tenant,
                    email=args.admin_email,
                    password=args.admin_password,
                )
            await identity_admin.assign_role_by_name(
                session, tenant_id=args.tenant, user_id=user.id, role_name="admin"
            )
            print(f"admin_user_id={user.id}")
        await session.commit()
    print(f"seeded_roles={','.join(sorted(roles))}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_seed(args))
    except IdentityError as exc:
        print(f"seed failed: {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
