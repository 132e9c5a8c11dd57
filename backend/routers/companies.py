# routers/companies.py — Companies, their users, projects and invitations
# Company-scoped routes declare company_scope="company_id": non-admins may only
# reach the company on their own profile.
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, validate_password_strength
from authorization import require_permission
from company_service import CompanyService
from database import get_db_session
from models import Company, CompanyType, RegistrationInvitation
from routers.projects import ProjectCreate, ProjectOut, project_to_out
from routers.users import UserOut, user_to_out

router = APIRouter(prefix="/api/v1/companies", tags=["Companies"])


# ============================================================
# SCHEMAS
# ============================================================

class CompanyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    inn: Optional[str] = Field(None, max_length=32)
    type: CompanyType = CompanyType.PROJECT


class CompanyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    inn: Optional[str] = Field(None, max_length=32)
    type: Optional[CompanyType] = None


class CompanyOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    inn: Optional[str] = None
    type: str
    created_at: str
    updated_at: str


class CompanyUserCreate(BaseModel):
    email: EmailStr
    password: str
    full_name: str = Field(..., min_length=1, max_length=255)
    phone: Optional[str] = None
    region_id: Optional[int] = None
    position: Optional[str] = None
    role_ids: List[int] = Field(default_factory=list)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


class CompanyUserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    phone: Optional[str] = None
    region_id: Optional[int] = None
    position: Optional[str] = None


class ExistingUserAdd(BaseModel):
    user_id: int


class RoleAssign(BaseModel):
    role_id: int


class InvitationCreate(BaseModel):
    email: EmailStr
    role_id: Optional[int] = None


class InvitationOut(BaseModel):
    id: int
    email: str
    code: str
    status: str
    invited_by: Optional[int] = None
    role_id: Optional[int] = None
    company_id: Optional[int] = None
    expires_at: str
    accepted_at: Optional[str] = None
    created_at: str


# ============================================================
# HELPERS
# ============================================================

def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


def _company_to_out(c: Company) -> CompanyOut:
    return CompanyOut(
        id=c.id, name=c.name, description=c.description, inn=c.inn,
        type=c.type.value if isinstance(c.type, CompanyType) else c.type,
        created_at=_ts(c.created_at), updated_at=_ts(c.updated_at),
    )


def _invitation_to_out(i: RegistrationInvitation) -> InvitationOut:
    return InvitationOut(
        id=i.id, email=i.email, code=i.code, status=i.status.value,
        invited_by=i.invited_by, role_id=i.role_id, company_id=i.company_id,
        expires_at=_ts(i.expires_at), accepted_at=_ts(i.accepted_at),
        created_at=_ts(i.created_at),
    )


# ============================================================
# COMPANIES
# ============================================================

@router.get("", response_model=List[CompanyOut])
async def list_companies(
    type: Optional[CompanyType] = None,
    user: CurrentUser = Depends(require_permission("companies:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    return [_company_to_out(c) for c in await CompanyService.list_companies(db, type)]


@router.post("", response_model=CompanyOut, status_code=201)
async def create_company(
    data: CompanyCreate,
    user: CurrentUser = Depends(require_permission("companies:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    return _company_to_out(await CompanyService.create_company(db, data.model_dump()))


@router.get("/{company_id}", response_model=CompanyOut)
async def get_company(
    company_id: int,
    user: CurrentUser = Depends(require_permission(company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    return _company_to_out(await CompanyService.get_company(db, company_id))


@router.patch("/{company_id}", response_model=CompanyOut)
async def update_company(
    company_id: int,
    data: CompanyUpdate,
    user: CurrentUser = Depends(require_permission("companies:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    company = await CompanyService.update_company(db, company_id, data.model_dump(exclude_unset=True))
    return _company_to_out(company)


@router.delete("/{company_id}")
async def delete_company(
    company_id: int,
    user: CurrentUser = Depends(require_permission("companies:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    await CompanyService.delete_company(db, company_id)
    return {"status": "deleted", "company_id": company_id}


# ============================================================
# COMPANY USERS
# ============================================================

@router.get("/{company_id}/users", response_model=List[UserOut])
async def list_company_users(
    company_id: int,
    user: CurrentUser = Depends(require_permission("company-users:list", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    return [user_to_out(u) for u in await CompanyService.get_company_users(db, company_id)]


@router.post("/{company_id}/users", response_model=UserOut, status_code=201)
async def create_company_user(
    company_id: int,
    data: CompanyUserCreate,
    user: CurrentUser = Depends(require_permission("company-users:manage", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    created = await CompanyService.create_user_for_company(db, company_id, data.model_dump(), created_by=user.id)
    return user_to_out(created)


@router.post("/{company_id}/users/add-existing", response_model=UserOut)
async def add_existing_user(
    company_id: int,
    data: ExistingUserAdd,
    user: CurrentUser = Depends(require_permission("company-users:manage", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    """Link a user without a company to this company"""
    added = await CompanyService.add_user_to_company(db, company_id, data.user_id, assigned_by=user.id)
    return user_to_out(added)


@router.patch("/{company_id}/users/{user_id}", response_model=UserOut)
async def update_company_user(
    company_id: int,
    user_id: int,
    data: CompanyUserUpdate,
    user: CurrentUser = Depends(require_permission("company-users:manage", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    updated = await CompanyService.update_company_user(
        db, company_id, user_id, data.model_dump(exclude_unset=True), updated_by=user.id,
    )
    return user_to_out(updated)


@router.delete("/{company_id}/users/{user_id}")
async def remove_company_user(
    company_id: int,
    user_id: int,
    user: CurrentUser = Depends(require_permission("company-users:manage", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    await CompanyService.remove_company_user(db, company_id, user_id, actor_id=user.id)
    return {"status": "deleted", "user_id": user_id}


@router.patch("/{company_id}/users/{user_id}/deactivate", response_model=UserOut)
async def deactivate_user(
    company_id: int,
    user_id: int,
    user: CurrentUser = Depends(require_permission("company-users:deactivate", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    return user_to_out(await CompanyService.deactivate_user(db, company_id, user_id, actor_id=user.id))


@router.patch("/{company_id}/users/{user_id}/activate", response_model=UserOut)
async def activate_user(
    company_id: int,
    user_id: int,
    user: CurrentUser = Depends(require_permission("company-users:deactivate", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    return user_to_out(await CompanyService.activate_user(db, company_id, user_id, actor_id=user.id))


@router.post("/{company_id}/users/{user_id}/roles", response_model=UserOut)
async def assign_role(
    company_id: int,
    user_id: int,
    data: RoleAssign,
    user: CurrentUser = Depends(require_permission("company-users:roles", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    updated = await CompanyService.assign_role_to_user(db, company_id, user_id, data.role_id, assigned_by=user.id)
    return user_to_out(updated)


@router.delete("/{company_id}/users/{user_id}/roles/{role_id}", response_model=UserOut)
async def remove_role(
    company_id: int,
    user_id: int,
    role_id: int,
    user: CurrentUser = Depends(require_permission("company-users:roles", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    updated = await CompanyService.remove_role_from_user(db, company_id, user_id, role_id, removed_by=user.id)
    return user_to_out(updated)


# ============================================================
# COMPANY PROJECTS
# ============================================================

@router.get("/{company_id}/projects", response_model=List[ProjectOut])
async def list_company_projects(
    company_id: int,
    user: CurrentUser = Depends(require_permission("company-projects:list", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    return [project_to_out(p) for p in await CompanyService.get_company_projects(db, company_id)]


@router.post("/{company_id}/projects", response_model=ProjectOut, status_code=201)
async def create_company_project(
    company_id: int,
    data: ProjectCreate,
    user: CurrentUser = Depends(require_permission("company-projects:create", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    project = await CompanyService.create_company_project(db, company_id, data.model_dump(), user.id)
    return project_to_out(project)


# ============================================================
# INVITATIONS
# ============================================================

@router.get("/{company_id}/invitations", response_model=List[InvitationOut])
async def list_invitations(
    company_id: int,
    user: CurrentUser = Depends(require_permission("company-users:list", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    return [_invitation_to_out(i) for i in await CompanyService.list_invitations(db, company_id)]


@router.post("/{company_id}/invitations", response_model=InvitationOut, status_code=201)
async def create_invitation(
    company_id: int,
    data: InvitationCreate,
    user: CurrentUser = Depends(require_permission("company-users:invite", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    invitation = await CompanyService.create_invitation(
        db, company_id, data.email, invited_by=user.id, role_id=data.role_id,
    )
    return _invitation_to_out(invitation)


@router.delete("/{company_id}/invitations/{invitation_id}", response_model=InvitationOut)
async def cancel_invitation(
    company_id: int,
    invitation_id: int,
    user: CurrentUser = Depends(require_permission("company-users:invite", company_scope="company_id")),
    db: AsyncSession = Depends(get_db_session),
):
    invitation = await CompanyService.cancel_invitation(db, company_id, invitation_id, cancelled_by=user.id)
    return _invitation_to_out(invitation)
