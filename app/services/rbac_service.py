"""
RBAC resolver — roles and effective permissions through the
user_roles / role_permissions join tables.

Read methods called on their own never raise: a storage failure is logged
and reported as the empty set, which callers treat as "no privileges".
Inside an open unit of work the failure propagates instead, because the
enclosing transaction is already broken and must roll back.

Role assignment is *not* idempotent: assigning a role the user already
holds is an error.  Role removal is idempotent: removing a role the user
does not hold is a no-op, only an unknown role name is an error.

Roles and permissions are reference data managed by id; deleting one
cascades to its user and role links.
"""
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import BusinessError, NotFoundError, wrap_unexpected
from app.models import Permission, Role
from app.repositories import PermissionRepository, RoleRepository, is_unique_violation
from app.transaction import Propagation, TransactionRunner

logger = logging.getLogger(__name__)


def _role_to_dict(role: Role) -> dict:
    return {"id": role.id, "name": role.name, "description": role.description}


def _permission_to_dict(permission: Permission) -> dict:
    return {"id": permission.id, "name": permission.name, "description": permission.description}


async def _require_role(repo: RoleRepository, role_id: int) -> Role:
    role = await repo.get_by_id(role_id)
    if role is None:
        raise NotFoundError("Role not found", "ROLE_NOT_FOUND")
    return role


async def _require_permission(repo: PermissionRepository, permission_id: int) -> Permission:
    permission = await repo.get_by_id(permission_id)
    if permission is None:
        raise NotFoundError("Permission not found", "PERMISSION_NOT_FOUND")
    return permission


class RBACService:
    def __init__(self, runner: TransactionRunner) -> None:
        self._runner = runner

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def roles_of(self, user_id: int) -> set[str]:
        async def _work(session: AsyncSession) -> set[str]:
            return await RoleRepository(session).role_names_for_user(user_id)

        try:
            return await self._runner.execute(Propagation.SUPPORTS, _work)
        except SQLAlchemyError:
            if self._runner.in_transaction:
                raise
            logger.exception("Role lookup failed for user %s", user_id)
            return set()

    async def permissions_of(self, role_name: str) -> set[str]:
        async def _work(session: AsyncSession) -> set[str]:
            return await RoleRepository(session).permission_names_for_role(role_name)

        try:
            return await self._runner.execute(Propagation.SUPPORTS, _work)
        except SQLAlchemyError:
            if self._runner.in_transaction:
                raise
            logger.exception("Permission lookup failed for role %r", role_name)
            return set()

    async def effective_permissions(self, user_id: int) -> set[str]:
        """Union of ``permissions_of`` over every role in ``roles_of(user_id)``."""
        permissions: set[str] = set()
        for role_name in await self.roles_of(user_id):
            permissions |= await self.permissions_of(role_name)
        return permissions

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    async def assign_role(self, user_id: int, role_name: str) -> None:
        """
        Raises:
            NotFoundError: ``ROLE_NOT_FOUND`` for an unknown role name.
            BusinessError: ``ALREADY_ASSIGNED`` when the user already holds it.
        """

        async def _work(session: AsyncSession) -> None:
            repo = RoleRepository(session)
            role = await repo.get_by_name(role_name)
            if role is None:
                raise NotFoundError("Role not found", "ROLE_NOT_FOUND")
            if await repo.has_user_role(user_id, role.id):
                raise BusinessError("Role already assigned", "ALREADY_ASSIGNED")
            try:
                await repo.add_user_role(user_id, role.id)
            except IntegrityError as exc:
                # Lost a race against a concurrent assignment of the same pair,
                # or the user id does not exist.
                if is_unique_violation(exc):
                    raise BusinessError("Role already assigned", "ALREADY_ASSIGNED") from None
                raise NotFoundError("User not found", "USER_NOT_FOUND") from None

        with wrap_unexpected("ROLE_ASSIGNMENT_FAILED", "Role assignment failed"):
            await self._runner.execute(Propagation.REQUIRED, _work)
        logger.info("Role %s assigned to user %s", role_name, user_id)

    async def remove_role(self, user_id: int, role_name: str) -> None:
        async def _work(session: AsyncSession) -> bool:
            repo = RoleRepository(session)
            role = await repo.get_by_name(role_name)
            if role is None:
                raise NotFoundError("Role not found", "ROLE_NOT_FOUND")
            return await repo.remove_user_role(user_id, role.id)

        with wrap_unexpected("ROLE_REMOVAL_FAILED", "Role removal failed"):
            removed = await self._runner.execute(Propagation.REQUIRED, _work)
        if removed:
            logger.info("Role %s removed from user %s", role_name, user_id)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def create_role(self, name: str, description: str | None = None) -> dict:
        async def _work(session: AsyncSession) -> dict:
            repo = RoleRepository(session)
            if await repo.get_by_name(name) is not None:
                raise BusinessError("Role already exists", "ROLE_EXISTS")
            return _role_to_dict(await repo.add(Role(name=name, description=description)))

        with wrap_unexpected("ROLE_CREATION_FAILED", "Role creation failed"):
            return await self._runner.execute(Propagation.REQUIRED, _work)

    async def list_roles(self) -> list[dict]:
        async def _work(session: AsyncSession) -> list[dict]:
            return [_role_to_dict(r) for r in await RoleRepository(session).list_all()]

        return await self._runner.execute(Propagation.SUPPORTS, _work)

    async def get_role(self, role_id: int) -> dict:
        """Role detail including its granted permission names, sorted."""

        async def _work(session: AsyncSession) -> dict:
            repo = RoleRepository(session)
            data = _role_to_dict(await _require_role(repo, role_id))
            data["permissions"] = await repo.permission_names_for_role_id(role_id)
            return data

        return await self._runner.execute(Propagation.SUPPORTS, _work)

    async def update_role(
        self, role_id: int, name: str | None = None, description: str | None = None
    ) -> dict:
        """
        Rename and/or re-describe a role; ``None`` leaves a field unchanged.

        Raises:
            NotFoundError: ``ROLE_NOT_FOUND``.
            BusinessError: ``ROLE_NAME_EXISTS`` when another role has *name*.
        """

        async def _work(session: AsyncSession) -> dict:
            repo = RoleRepository(session)
            role = await _require_role(repo, role_id)
            if name is not None and name != role.name:
                if await repo.get_by_name(name) is not None:
                    raise BusinessError("Role name already exists", "ROLE_NAME_EXISTS")
                role.name = name
            if description is not None:
                role.description = description
            await session.flush()
            return _role_to_dict(role)

        with wrap_unexpected("ROLE_UPDATE_FAILED", "Role update failed"):
            try:
                result = await self._runner.execute(Propagation.REQUIRED, _work)
            except IntegrityError as exc:
                if not is_unique_violation(exc):
                    raise
                raise BusinessError("Role name already exists", "ROLE_NAME_EXISTS") from None
        logger.info("Role %s updated", role_id)
        return result

    async def delete_role(self, role_id: int) -> None:
        """Delete a role; its user assignments and permission grants go with it."""

        async def _work(session: AsyncSession) -> None:
            if not await RoleRepository(session).delete_by_id(role_id):
                raise NotFoundError("Role not found", "ROLE_NOT_FOUND")

        with wrap_unexpected("ROLE_DELETION_FAILED", "Role deletion failed"):
            await self._runner.execute(Propagation.REQUIRED, _work)
        logger.info("Role %s deleted", role_id)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def create_permission(self, name: str, description: str | None = None) -> dict:
        async def _work(session: AsyncSession) -> dict:
            repo = PermissionRepository(session)
            if await repo.get_by_name(name) is not None:
                raise BusinessError("Permission already exists", "PERMISSION_EXISTS")
            return _permission_to_dict(await repo.add(Permission(name=name, description=description)))

        with wrap_unexpected("PERMISSION_CREATION_FAILED", "Permission creation failed"):
            return await self._runner.execute(Propagation.REQUIRED, _work)

    async def list_permissions(self) -> list[dict]:
        async def _work(session: AsyncSession) -> list[dict]:
            return [_permission_to_dict(p) for p in await PermissionRepository(session).list_all()]

        return await self._runner.execute(Propagation.SUPPORTS, _work)

    async def get_permission(self, permission_id: int) -> dict:
        async def _work(session: AsyncSession) -> dict:
            return _permission_to_dict(
                await _require_permission(PermissionRepository(session), permission_id)
            )

        return await self._runner.execute(Propagation.SUPPORTS, _work)

    async def update_permission(
        self, permission_id: int, name: str | None = None, description: str | None = None
    ) -> dict:
        """
        Raises:
            NotFoundError: ``PERMISSION_NOT_FOUND``.
            BusinessError: ``PERMISSION_NAME_EXISTS`` when another permission has *name*.
        """

        async def _work(session: AsyncSession) -> dict:
            repo = PermissionRepository(session)
            permission = await _require_permission(repo, permission_id)
            if name is not None and name != permission.name:
                if await repo.get_by_name(name) is not None:
                    raise BusinessError("Permission name already exists", "PERMISSION_NAME_EXISTS")
                permission.name = name
            if description is not None:
                permission.description = description
            await session.flush()
            return _permission_to_dict(permission)

        with wrap_unexpected("PERMISSION_UPDATE_FAILED", "Permission update failed"):
            try:
                result = await self._runner.execute(Propagation.REQUIRED, _work)
            except IntegrityError as exc:
                if not is_unique_violation(exc):
                    raise
                raise BusinessError(
                    "Permission name already exists", "PERMISSION_NAME_EXISTS"
                ) from None
        logger.info("Permission %s updated", permission_id)
        return result

    async def delete_permission(self, permission_id: int) -> None:
        async def _work(session: AsyncSession) -> None:
            if not await PermissionRepository(session).delete_by_id(permission_id):
                raise NotFoundError("Permission not found", "PERMISSION_NOT_FOUND")

        with wrap_unexpected("PERMISSION_DELETION_FAILED", "Permission deletion failed"):
            await self._runner.execute(Propagation.REQUIRED, _work)
        logger.info("Permission %s deleted", permission_id)

    async def grant_permission(self, role_name: str, permission_name: str) -> None:
        async def _work(session: AsyncSession) -> None:
            roles = RoleRepository(session)
            role = await roles.get_by_name(role_name)
            if role is None:
                raise NotFoundError("Role not found", "ROLE_NOT_FOUND")
            permission = await PermissionRepository(session).get_by_name(permission_name)
            if permission is None:
                raise NotFoundError("Permission not found", "PERMISSION_NOT_FOUND")
            if await roles.has_role_permission(role.id, permission.id):
                raise BusinessError("Permission already granted", "ALREADY_ASSIGNED")
            await roles.add_role_permission(role.id, permission.id)

        with wrap_unexpected("PERMISSION_GRANT_FAILED", "Permission grant failed"):
            await self._runner.execute(Propagation.REQUIRED, _work)
