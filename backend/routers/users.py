# routers/users.py — System-wide user administration
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, validate_password_strength
from authorization import require_permission
from database import get_db_session
from models import User, UserStatus
from user_service import UserService

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class RoleBrief(BaseModel):
    id: int
    name: str


class UserOut(BaseModel):
    id: int
    email: str
    full_name: str
    phone: Optional[str] = None
    is_admin: bool
    status: str
    region_id: Optional[int] = None
    company_id: Optional[int] = None
    position: Optional[str] = None
    roles: List[RoleBrief] = []
    last_login_at: Optional[str] = None
    created_at: str


class UserCreate(BaseModel):
    email: EmailStr
    password: str
    full_name: str = Field(..., min_length=1, max_length=255)
    phone: Optional[str] = None
    is_admin: bool = False
    status: UserStatus = UserStatus.ACTIVE
    region_id: Optional[int] = None
    company_id: Optional[int] = None
    position: Optional[str] = None
    role_ids: List[int] = Field(default_factory=list)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    phone: Optional[str] = None
    is_admin: Optional[bool] = None
    status: Optional[UserStatus] = None
    region_id: Optional[int] = None
    company_id: Optional[int] = None
    position: Optional[str] = None

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: Optional[str]) -> Optional[str]:
        return validate_password_strength(v) if v is not None else v


# --- Helpers ---

def user_to_out(u: User) -> UserOut:
    return UserOut(
        id=u.id,
        email=u.email,
        full_name=u.full_name or "",
        phone=u.phone,
        is_admin=bool(u.is_admin),
        status=u.status.value if isinstance(u.status, UserStatus) else u.status,
        region_id=u.region_id,
        company_id=u.profile.company_id if u.profile else None,
        position=u.profile.position if u.profile else None,
        roles=sorted(
            (RoleBrief(id=ur.role.id, name=ur.role.name) for ur in u.user_roles),
            key=lambda r: r.name,
        ),
        last_login_at=u.last_login_at.isoformat() if u.last_login_at else None,
        created_at=u.created_at.isoformat() if isinstance(u.created_at, datetime) else "",
    )


# --- Endpoints ---

@router.get("", response_model=List[UserOut])
async def list_users(
    status: Optional[UserStatus] = None,
    company_id: Optional[int] = None,
    search: Optional[str] = Query(None, max_length=255),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(require_permission("users:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    users = await UserService.list_users(
        db, status=status, company_id=company_id, search=search, skip=offset, limit=limit,
    )
    return [user_to_out(u) for u in users]


@router.post("", response_model=UserOut, status_code=201)
async def create_user(
    data: UserCreate,
    user: CurrentUser = Depends(require_permission("users:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    created = await UserService.create_user(db, data.model_dump(), created_by=user.id)
    return user_to_out(created)


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: int,
    user: CurrentUser = Depends(require_permission("users:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    return user_to_out(await UserService.get_user(db, user_id))


@router.patch("/{user_id}", response_model=UserOut)
async def update_user(
    user_id: int,
    data: UserUpdate,
    user: CurrentUser = Depends(require_permission("users:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    updated = await UserService.update_user(
        db, user_id, data.model_dump(exclude_unset=True), updated_by=user.id,
    )
    return user_to_out(updated)


@router.delete("/{user_id}")
async def delete_user(
    user_id: int,
    user: CurrentUser = Depends(require_permission("users:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    """Soft-delete a user"""
    await UserService.delete_user(db, user_id, deleted_by=user.id)
    return {"status": "deleted", "user_id": user_id}
