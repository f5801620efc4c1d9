from fastapi import APIRouter, Depends

from app.container import Services
from app.dependencies import get_principal, get_services, require_permission
from app.schemas import PermissionGrant, RoleAssignment, RoleCreate, RoleUpdate
from app.security import TokenPayload

router = APIRouter(prefix="/api/v1", tags=["roles"])

@router.get("/roles")
async def list_roles(
    _: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.rbac.list_roles()

@router.post("/roles", status_code=201)
async def create_role(
    data: RoleCreate,
    _: TokenPayload = Depends(require_permission("role:manage")),
    services: Services = Depends(get_services),
):
    return await services.rbac.create_role(data.name, data.description)

@router.get("/roles/{role_id}")
async def get_role(
    role_id: int,
    _: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.rbac.get_role(role_id)

@router.put("/roles/{role_id}")
async def update_role(
    role_id: int,
    data: RoleUpdate,
    _: TokenPayload = Depends(require_permission("role:manage")),
    services: Services = Depends(get_services),
):
    return await services.rbac.update_role(role_id, data.name, data.description)

@router.delete("/roles/{role_id}", status_code=204)
async def delete_role(
    role_id: int,
    _: TokenPayload = Depends(require_permission("role:manage")),
    services: Services = Depends(get_services),
):
    await services.rbac.delete_role(role_id)

@router.post("/roles/{role_name}/permissions", status_code=201)
async def grant_permission(
    role_name: str,
    data: PermissionGrant,
    _: TokenPayload = Depends(require_permission("role:manage")),
    services: Services = Depends(get_services),
):
    await services.rbac.grant_permission(role_name, data.permission)
    return {"role": role_name, "permission": data.permission}

@router.get("/users/{user_id}/permissions")
async def user_permissions(
    user_id: int,
    _: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    roles = await services.rbac.roles_of(user_id)
    permissions = await services.rbac.effective_permissions(user_id)
    return {"user_id": user_id, "roles": sorted(roles), "permissions": sorted(permissions)}

@router.post("/users/{user_id}/roles", status_code=201)
async def assign_role(
    user_id: int,
    data: RoleAssignment,
    _: TokenPayload = Depends(require_permission("role:assign")),
    services: Services = Depends(get_services),
):
    await services.rbac.assign_role(user_id, data.role)
    return {"user_id": user_id, "role": data.role}

@router.delete("/users/{user_id}/roles/{role}", status_code=204)
async def remove_role(
    user_id: int,
    role: str,
    _: TokenPayload = Depends(require_permission("role:assign")),
    services: Services = Depends(get_services),
):
    await services.rbac.remove_role(user_id, role)
