# routers/kanban.py — Kanban boards, membership and workflow columns
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from authorization import require_permission
from database import get_db_session
from kanban_service import KanbanBoardService, KanbanColumnService
from models import KanbanBoard, KanbanColumn, KanbanBoardMember
from routers.projects import ProjectOut, project_to_out

router = APIRouter(prefix="/api/v1/kanban-boards", tags=["Kanban Boards"])
columns_router = APIRouter(prefix="/api/v1/kanban-columns", tags=["Kanban Columns"])


# ============================================================
# SCHEMAS
# ============================================================

# --- Board ---
class BoardCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class BoardUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_not_null(cls, v):
        if v is None:
            raise ValueError("Board name cannot be null")
        return v


class ColumnOut(BaseModel):
    id: int
    board_id: int
    name: str
    position: int
    color: Optional[str] = None
    description: Optional[str] = None
    created_at: str
    updated_at: str


class BoardOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    code: str
    columns: List[ColumnOut] = []
    created_at: str
    updated_at: str


class JoinRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


# --- Membership ---
class MemberAdd(BaseModel):
    user_id: int


class MemberOut(BaseModel):
    id: int
    board_id: int
    user_id: int
    email: str
    full_name: str
    created_at: str


# --- Column ---
class ColumnCreate(BaseModel):
    board_id: int
    name: str = Field(..., min_length=1, max_length=255)
    position: Optional[int] = Field(None, ge=0)
    color: Optional[str] = Field(None, max_length=64)
    description: Optional[str] = Field(None, max_length=500)


class ColumnUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    position: Optional[int] = Field(None, ge=0)
    color: Optional[str] = Field(None, max_length=64)
    description: Optional[str] = Field(None, max_length=500)

    @field_validator("name", "position")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class ReorderItem(BaseModel):
    id: int
    position: int = Field(..., ge=0)


class ReorderRequest(BaseModel):
    items: List[ReorderItem]


class ColumnProjectsOut(BaseModel):
    column: ColumnOut
    projects: List[ProjectOut] = []


# ============================================================
# HELPERS
# ============================================================

def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


def _column_to_out(c: KanbanColumn) -> ColumnOut:
    return ColumnOut(
        id=c.id, board_id=c.board_id, name=c.name, position=c.position,
        color=c.color, description=c.description,
        created_at=_ts(c.created_at), updated_at=_ts(c.updated_at),
    )


def _board_to_out(b: KanbanBoard) -> BoardOut:
    return BoardOut(
        id=b.id, name=b.name, description=b.description, code=b.code,
        columns=[_column_to_out(c) for c in b.columns],
        created_at=_ts(b.created_at), updated_at=_ts(b.updated_at),
    )


def _member_to_out(m: KanbanBoardMember) -> MemberOut:
    return MemberOut(
        id=m.id, board_id=m.board_id, user_id=m.user_id,
        email=m.user.email, full_name=m.user.full_name or "",
        created_at=_ts(m.created_at),
    )


# ============================================================
# BOARD ENDPOINTS
# ============================================================

@router.get("", response_model=List[BoardOut])
async def list_boards(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Admins see every board; everyone else sees boards they belong to"""
    return [_board_to_out(b) for b in await KanbanBoardService.list_boards(db, user)]


@router.post("", response_model=BoardOut, status_code=201)
async def create_board(
    data: BoardCreate,
    user: CurrentUser = Depends(require_permission("kanban-boards:create")),
    db: AsyncSession = Depends(get_db_session),
):
    board = await KanbanBoardService.create_board(db, data.name, data.description)
    return _board_to_out(board)


@router.post("/join", response_model=BoardOut)
async def join_board(
    data: JoinRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Join a board with its invitation code; joining twice is harmless"""
    board = await KanbanBoardService.join_by_code(db, data.code, user.id)
    return _board_to_out(board)


@router.get("/{board_id}", response_model=BoardOut)
async def get_board(
    board_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return _board_to_out(await KanbanBoardService.get_board(db, board_id, user))


@router.patch("/{board_id}", response_model=BoardOut)
async def update_board(
    board_id: int,
    data: BoardUpdate,
    user: CurrentUser = Depends(require_permission("kanban-boards:update")),
    db: AsyncSession = Depends(get_db_session),
):
    board = await KanbanBoardService.update_board(db, board_id, data.model_dump(exclude_unset=True), user)
    return _board_to_out(board)


@router.get("/{board_id}/columns", response_model=List[ColumnOut])
async def list_board_columns(
    board_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return [_column_to_out(c) for c in await KanbanColumnService.list_columns(db, board_id, user)]


@router.get("/{board_id}/projects", response_model=List[ColumnProjectsOut])
async def board_projects(
    board_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Board view: every column with its projects"""
    grouped = await KanbanBoardService.board_projects(db, board_id, user)
    return [
        ColumnProjectsOut(column=_column_to_out(c), projects=[project_to_out(p) for p in projects])
        for c, projects in grouped
    ]


# ============================================================
# MEMBERSHIP ENDPOINTS
# ============================================================

@router.post("/{board_id}/members", response_model=MemberOut, status_code=201)
async def add_member(
    board_id: int,
    data: MemberAdd,
    user: CurrentUser = Depends(require_permission("kanban-boards:members:add")),
    db: AsyncSession = Depends(get_db_session),
):
    member = await KanbanBoardService.add_member(db, board_id, data.user_id, added_by=user.id)
    return _member_to_out(member)


@router.delete("/{board_id}/members/{user_id}")
async def remove_member(
    board_id: int,
    user_id: int,
    user: CurrentUser = Depends(require_permission("kanban-boards:members:remove")),
    db: AsyncSession = Depends(get_db_session),
):
    await KanbanBoardService.remove_member(db, board_id, user_id)
    return {"status": "removed", "board_id": board_id, "user_id": user_id}


@router.get("/{board_id}/members", response_model=List[MemberOut])
async def list_members(
    board_id: int,
    user: CurrentUser = Depends(require_permission("kanban-boards:members:list")),
    db: AsyncSession = Depends(get_db_session),
):
    return [_member_to_out(m) for m in await KanbanBoardService.list_members(db, board_id, user)]


# ============================================================
# COLUMN ENDPOINTS
# ============================================================

@columns_router.post("", response_model=ColumnOut, status_code=201)
async def create_column(
    data: ColumnCreate,
    user: CurrentUser = Depends(require_permission("kanban-columns:create")),
    db: AsyncSession = Depends(get_db_session),
):
    """Add a column; without a position it goes after the last one"""
    column = await KanbanColumnService.create_column(
        db, data.board_id, user, data.name,
        position=data.position, color=data.color, description=data.description,
    )
    return _column_to_out(column)


@columns_router.patch("/reorder", response_model=List[ColumnOut])
async def reorder_columns(
    data: ReorderRequest,
    user: CurrentUser = Depends(require_permission("kanban-columns:reorder")),
    db: AsyncSession = Depends(get_db_session),
):
    """Set several column positions of one board atomically"""
    columns = await KanbanColumnService.reorder_columns(
        db, [(item.id, item.position) for item in data.items], user,
    )
    return [_column_to_out(c) for c in columns]


@columns_router.get("/board/{board_id}", response_model=List[ColumnOut])
async def list_columns(
    board_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return [_column_to_out(c) for c in await KanbanColumnService.list_columns(db, board_id, user)]


@columns_router.patch("/{column_id}", response_model=ColumnOut)
async def update_column(
    column_id: int,
    data: ColumnUpdate,
    user: CurrentUser = Depends(require_permission("kanban-columns:update")),
    db: AsyncSession = Depends(get_db_session),
):
    column = await KanbanColumnService.update_column(db, column_id, data.model_dump(exclude_unset=True), user)
    return _column_to_out(column)


@columns_router.delete("/{column_id}")
async def delete_column(
    column_id: int,
    user: CurrentUser = Depends(require_permission("kanban-columns:delete")),
    db: AsyncSession = Depends(get_db_session),
):
    """Columns that still hold projects cannot be deleted"""
    await KanbanColumnService.delete_column(db, column_id, user)
    return {"status": "deleted", "column_id": column_id}
