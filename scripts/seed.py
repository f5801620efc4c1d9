"""Seed roles and the permission catalogue. Safe to run repeatedly."""
import asyncio
import argparse
import time

from app.database import engine, async_session, autocommit_session, Base
from app.exceptions import BusinessError
from app.services.rbac_service import RBACService
from app.transaction import TransactionRunner

PERMISSIONS = {
    "article:create": "Create articles",
    "article:update": "Edit articles",
    "article:delete": "Delete articles",
    "article:publish": "Publish articles",
    "comment:create": "Write comments",
    "comment:moderate": "Approve / reject comments and view moderation statistics",
    "comment:delete": "Delete comments",
    "role:assign": "Assign and remove user roles",
    "role:manage": "Create, edit and delete roles and permissions",
    "user:delete": "Delete user accounts",
}

ROLES = {
    "ADMIN": ("Administrator", list(PERMISSIONS)),
    "EDITOR": (
        "Editor",
        [
            "article:create",
            "article:update",
            "article:delete",
            "article:publish",
            "comment:create",
            "comment:moderate",
            "comment:delete",
        ],
    ),
    "USER": ("Registered user", ["comment:create"]),
}


async def seed_reference_data(rbac: RBACService) -> dict:
    """Create missing roles, permissions and grants; return how many were added."""
    created = {"roles": 0, "permissions": 0, "grants": 0}

    for name, description in PERMISSIONS.items():
        try:
            await rbac.create_permission(name, description)
            created["permissions"] += 1
        except BusinessError as exc:
            if exc.code != "PERMISSION_EXISTS":
                raise

    for name, (description, grants) in ROLES.items():
        try:
            await rbac.create_role(name, description)
            created["roles"] += 1
        except BusinessError as exc:
            if exc.code != "ROLE_EXISTS":
                raise
        for permission in grants:
            try:
                await rbac.grant_permission(name, permission)
                created["grants"] += 1
            except BusinessError as exc:
                if exc.code != "ALREADY_ASSIGNED":
                    raise

    return created


async def seed(create_tables: bool = False):
    start = time.perf_counter()

    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        print("  Tables created")

    rbac = RBACService(TransactionRunner(async_session, autocommit_session))
    created = await seed_reference_data(rbac)

    elapsed = time.perf_counter() - start
    print(f"\nSeeding complete in {elapsed:.1f}s")
    print(f"  Permissions added: {created['permissions']}")
    print(f"  Roles added: {created['roles']}")
    print(f"  Grants added: {created['grants']}")

    await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Seed roles and permissions")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first")
    args = parser.parse_args()
    asyncio.run(seed(create_tables=args.create_tables))


if __name__ == "__main__":
    main()
