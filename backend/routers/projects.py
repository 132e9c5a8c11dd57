# routers/projects.py — Projects, change logs and comments
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser
from authorization import require_permission
from database import get_db_session
from models import Project, ProjectLog, ProjectComment
from project_service import ProjectService

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])

REQUIRED_FIELDS = ("name", "region_id", "status_id", "contact_name", "kanban_column_id")


# ============================================================
# SCHEMAS
# ============================================================

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    code: Optional[str] = Field(None, max_length=64)
    project_type_id: Optional[int] = None
    region_id: int
    status_id: int
    contact_name: str = Field(..., min_length=1, max_length=255)
    contact_phone: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    company_id: Optional[int] = None
    kanban_column_id: int
    executor_ids: List[int] = Field(default_factory=list)
    attached_files: List[str] = Field(default_factory=list)
    expected_deadline: Optional[datetime] = None
    comments: Optional[str] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    code: Optional[str] = Field(None, max_length=64)
    project_type_id: Optional[int] = None
    region_id: Optional[int] = None
    status_id: Optional[int] = None
    contact_name: Optional[str] = Field(None, min_length=1, max_length=255)
    contact_phone: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    company_id: Optional[int] = None
    kanban_column_id: Optional[int] = None
    executor_ids: Optional[List[int]] = None
    attached_files: Optional[List[str]] = None
    expected_deadline: Optional[datetime] = None
    comments: Optional[str] = None

    @field_validator(*REQUIRED_FIELDS)
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class StatusChange(BaseModel):
    status_id: int


class ColumnMove(BaseModel):
    kanban_column_id: int


class CommentCreate(BaseModel):
    message: str = Field(..., min_length=1, max_length=10000)


class ExecutorOut(BaseModel):
    id: int
    email: str
    full_name: str


class ProjectOut(BaseModel):
    id: int
    name: str
    code: Optional[str] = None
    project_type_id: Optional[int] = None
    region_id: int
    status_id: int
    contact_name: str
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    company_id: Optional[int] = None
    created_by: int
    kanban_column_id: int
    executors: List[ExecutorOut] = []
    attached_files: List[str] = []
    expected_deadline: Optional[str] = None
    comments: Optional[str] = None
    created_at: str
    updated_at: str


class ProjectLogOut(BaseModel):
    id: int
    project_id: int
    changed_by: int
    changed_by_name: str
    field: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    created_at: str


class CommentOut(BaseModel):
    id: int
    project_id: int
    author_id: int
    author_name: str
    message: str
    created_at: str


# ============================================================
# HELPERS
# ============================================================

def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


def project_to_out(p: Project) -> ProjectOut:
    return ProjectOut(
        id=p.id, name=p.name, code=p.code,
        project_type_id=p.project_type_id, region_id=p.region_id, status_id=p.status_id,
        contact_name=p.contact_name, contact_phone=p.contact_phone, contact_email=p.contact_email,
        company_id=p.company_id, created_by=p.created_by, kanban_column_id=p.kanban_column_id,
        executors=[ExecutorOut(id=u.id, email=u.email, full_name=u.full_name or "") for u in p.executors],
        attached_files=list(p.attached_files or []),
        expected_deadline=_ts(p.expected_deadline),
        comments=p.comments,
        created_at=_ts(p.created_at), updated_at=_ts(p.updated_at),
    )


def _log_to_out(entry: ProjectLog) -> ProjectLogOut:
    return ProjectLogOut(
        id=entry.id, project_id=entry.project_id, changed_by=entry.changed_by,
        changed_by_name=(entry.user.full_name or entry.user.email) if entry.user else "",
        field=entry.field, old_value=entry.old_value, new_value=entry.new_value,
        created_at=_ts(entry.created_at),
    )


def comment_to_out(c: ProjectComment) -> CommentOut:
    return CommentOut(
        id=c.id, project_id=c.project_id, author_id=c.author_id,
        author_name=(c.author.full_name or c.author.email) if c.author else "",
        message=c.message, created_at=_ts(c.created_at),
    )


# ============================================================
# PROJECT ENDPOINTS
# ============================================================

@router.get("", response_model=List[ProjectOut])
async def list_projects(
    region_id: Optional[int] = Query(None),
    status_id: Optional[int] = Query(None),
    project_type_id: Optional[int] = Query(None),
    company_id: Optional[int] = Query(None),
    executor_id: Optional[int] = Query(None),
    kanban_column_id: Optional[int] = Query(None),
    board_id: Optional[int] = Query(None),
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
):
    projects = await ProjectService.list_projects(
        db, region_id=region_id, status_id=status_id, project_type_id=project_type_id,
        company_id=company_id, executor_id=executor_id,
        kanban_column_id=kanban_column_id, board_id=board_id,
    )
    return [project_to_out(p) for p in projects]


@router.get("/check-name")
async def check_name(
    name: str = Query(..., min_length=1),
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return await ProjectService.check_name(db, name)


@router.post("", response_model=ProjectOut, status_code=201)
async def create_project(
    data: ProjectCreate,
    user: CurrentUser = Depends(require_permission("projects:create")),
    db: AsyncSession = Depends(get_db_session),
):
    project = await ProjectService.create(db, data.model_dump(), user.id)
    return project_to_out(project)


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: int,
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return project_to_out(await ProjectService.get_project(db, project_id))


@router.patch("/{project_id}", response_model=ProjectOut)
async def update_project(
    project_id: int,
    data: ProjectUpdate,
    user: CurrentUser = Depends(require_permission("projects:update")),
    db: AsyncSession = Depends(get_db_session),
):
    """Partial update; every changed field is written to the project log"""
    project = await ProjectService.update(db, project_id, data.model_dump(exclude_unset=True), user.id)
    return project_to_out(project)


@router.patch("/{project_id}/status", response_model=ProjectOut)
async def update_status(
    project_id: int,
    data: StatusChange,
    user: CurrentUser = Depends(require_permission("projects:update")),
    db: AsyncSession = Depends(get_db_session),
):
    project = await ProjectService.update_status(db, project_id, data.status_id, user.id)
    return project_to_out(project)


@router.patch("/{project_id}/kanban-column", response_model=ProjectOut)
async def move_to_kanban_column(
    project_id: int,
    data: ColumnMove,
    user: CurrentUser = Depends(require_permission("projects:update")),
    db: AsyncSession = Depends(get_db_session),
):
    project = await ProjectService.move_to_kanban_column(db, project_id, data.kanban_column_id, user.id)
    return project_to_out(project)


@router.delete("/{project_id}")
async def delete_project(
    project_id: int,
    user: CurrentUser = Depends(require_permission("projects:delete")),
    db: AsyncSession = Depends(get_db_session),
):
    await ProjectService.remove(db, project_id)
    return {"status": "deleted", "project_id": project_id}


# ============================================================
# LOGS & COMMENTS
# ============================================================

@router.get("/{project_id}/logs", response_model=List[ProjectLogOut])
async def list_logs(
    project_id: int,
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return [_log_to_out(entry) for entry in await ProjectService.list_logs(db, project_id)]


@router.get("/{project_id}/comments", response_model=List[CommentOut])
async def list_comments(
    project_id: int,
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return [comment_to_out(c) for c in await ProjectService.list_comments(db, project_id)]


@router.post("/{project_id}/comments", response_model=CommentOut, status_code=201)
async def add_comment(
    project_id: int,
    data: CommentCreate,
    user: CurrentUser = Depends(require_permission("project-comments:create")),
    db: AsyncSession = Depends(get_db_session),
):
    return comment_to_out(await ProjectService.add_comment(db, project_id, data.message, user.id))
