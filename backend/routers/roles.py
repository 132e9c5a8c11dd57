# routers/roles.py — Role definitions and the permission catalog
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser
from authorization import require_permission
from database import get_db_session
from models import Role, Permission
from role_service import RoleService, PermissionService

router = APIRouter(prefix="/api/v1/roles", tags=["Roles"])
permissions_router = APIRouter(prefix="/api/v1/permissions", tags=["Permissions"])


# --- Schemas ---

class PermissionCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=255, pattern=r"^[a-z0-9-]+(:[a-z0-9-]+)+$")
    description: Optional[str] = None


class PermissionUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=255, pattern=r"^[a-z0-9-]+(:[a-z0-9-]+)+$")
    description: Optional[str] = None


class PermissionOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    permission_ids: List[int] = Field(default_factory=list)


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    permission_ids: Optional[List[int]] = None


class RoleOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    created_by: Optional[int] = None
    permissions: List[PermissionOut] = []


# --- Helpers ---

def _permission_to_out(p: Permission) -> PermissionOut:
    return PermissionOut(id=p.id, name=p.name, description=p.description)


def _role_to_out(r: Role) -> RoleOut:
    return RoleOut(
        id=r.id, name=r.name, description=r.description, created_by=r.created_by,
        permissions=sorted(
            (_permission_to_out(rp.permission) for rp in r.role_permissions),
            key=lambda p: p.name,
        ),
    )


# ============================================================
# ROLES
# ============================================================

@router.get("", response_model=List[RoleOut])
async def list_roles(
    user: CurrentUser = Depends(require_permission("roles:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    return [_role_to_out(r) for r in await RoleService.list_roles(db)]


@router.post("", response_model=RoleOut, status_code=201)
async def create_role(
    data: RoleCreate,
    user: CurrentUser = Depends(require_permission("roles:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    role = await RoleService.create_role(
        db, data.name, data.description, data.permission_ids, created_by=user.id,
    )
    return _role_to_out(role)


@router.get("/{role_id}", response_model=RoleOut)
async def get_role(
    role_id: int,
    user: CurrentUser = Depends(require_permission("roles:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    return _role_to_out(await RoleService.get_role(db, role_id))


@router.patch("/{role_id}", response_model=RoleOut)
async def update_role(
    role_id: int,
    data: RoleUpdate,
    user: CurrentUser = Depends(require_permission("roles:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    """Partial update; permission_ids replaces the full grant set"""
    role = await RoleService.update_role(db, role_id, data.model_dump(exclude_unset=True), granted_by=user.id)
    return _role_to_out(role)


@router.delete("/{role_id}")
async def delete_role(
    role_id: int,
    user: CurrentUser = Depends(require_permission("roles:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    await RoleService.delete_role(db, role_id)
    return {"status": "deleted", "role_id": role_id}


# ============================================================
# PERMISSIONS
# ============================================================

@permissions_router.get("", response_model=List[PermissionOut])
async def list_permissions(
    user: CurrentUser = Depends(require_permission("permissions:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    return [_permission_to_out(p) for p in await PermissionService.list_permissions(db)]


@permissions_router.post("", response_model=PermissionOut, status_code=201)
async def create_permission(
    data: PermissionCreate,
    user: CurrentUser = Depends(require_permission("permissions:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    return _permission_to_out(await PermissionService.create_permission(db, data.name, data.description))


@permissions_router.get("/{permission_id}", response_model=PermissionOut)
async def get_permission(
    permission_id: int,
    user: CurrentUser = Depends(require_permission("permissions:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    return _permission_to_out(await PermissionService.get_permission(db, permission_id))


@permissions_router.patch("/{permission_id}", response_model=PermissionOut)
async def update_permission(
    permission_id: int,
    data: PermissionUpdate,
    user: CurrentUser = Depends(require_permission("permissions:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    permission = await PermissionService.update_permission(db, permission_id, data.model_dump(exclude_unset=True))
    return _permission_to_out(permission)


@permissions_router.delete("/{permission_id}")
async def delete_permission(
    permission_id: int,
    user: CurrentUser = Depends(require_permission("permissions:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    """Refused with 409 while any role still grants it"""
    await PermissionService.delete_permission(db, permission_id)
    return {"status": "deleted", "permission_id": permission_id}
