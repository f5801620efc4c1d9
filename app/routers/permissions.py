from fastapi import APIRouter, Depends

from app.container import Services
from app.dependencies import get_principal, get_services, require_permission
from app.schemas import PermissionCreate, PermissionUpdate
from app.security import TokenPayload

router = APIRouter(prefix="/api/v1/permissions", tags=["permissions"])

@router.get("")
async def list_permissions(
    _: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.rbac.list_permissions()

@router.post("", status_code=201)
async def create_permission(
    data: PermissionCreate,
    _: TokenPayload = Depends(require_permission("role:manage")),
    services: Services = Depends(get_services),
):
    return await services.rbac.create_permission(data.name, data.description)

@router.get("/{permission_id}")
async def get_permission(
    permission_id: int,
    _: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.rbac.get_permission(permission_id)

@router.put("/{permission_id}")
async def update_permission(
    permission_id: int,
    data: PermissionUpdate,
    _: TokenPayload = Depends(require_permission("role:manage")),
    services: Services = Depends(get_services),
):
    return await services.rbac.update_permission(permission_id, data.name, data.description)

@router.delete("/{permission_id}", status_code=204)
async def delete_permission(
    permission_id: int,
    _: TokenPayload = Depends(require_permission("role:manage")),
    services: Services = Depends(get_services),
):
    await services.rbac.delete_permission(permission_id)
