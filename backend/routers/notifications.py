# routers/notifications.py — In-app notifications of the current user
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from models import Notification, NotificationSettings
from notification_service import NotificationService, SETTINGS_FIELDS

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


# --- Schemas ---

class NotificationOut(BaseModel):
    id: int
    type: str
    title: str
    message: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[int] = None
    created_by: Optional[int] = None
    is_read: bool
    read_at: Optional[str] = None
    created_at: str


def _notif_out(n: Notification) -> dict:
    return NotificationOut(
        id=n.id, type=n.type, title=n.title, message=n.message,
        entity_type=n.entity_type, entity_id=n.entity_id, created_by=n.created_by,
        is_read=bool(n.is_read),
        read_at=n.read_at.isoformat() if n.read_at else None,
        created_at=n.created_at.isoformat() if isinstance(n.created_at, datetime) else "",
    ).model_dump()


class NotificationSettingsOut(BaseModel):
    sound_enabled: bool
    sound_volume: int
    project_created: bool
    project_updated: bool
    project_assigned: bool
    project_comment: bool
    user_mentioned: bool
    file_uploaded: bool
    deadline_approaching: bool
    status_changed: bool
    system_announcement: bool
    kanban_member_added: bool


class NotificationSettingsUpdate(BaseModel):
    sound_enabled: Optional[bool] = None
    sound_volume: Optional[int] = Field(None, ge=0, le=100)
    project_created: Optional[bool] = None
    project_updated: Optional[bool] = None
    project_assigned: Optional[bool] = None
    project_comment: Optional[bool] = None
    user_mentioned: Optional[bool] = None
    file_uploaded: Optional[bool] = None
    deadline_approaching: Optional[bool] = None
    status_changed: Optional[bool] = None
    system_announcement: Optional[bool] = None
    kanban_member_added: Optional[bool] = None

    @field_validator("*")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v


def _settings_out(s: NotificationSettings) -> dict:
    return NotificationSettingsOut(**{field: getattr(s, field) for field in SETTINGS_FIELDS}).model_dump()


# ============================================================
# LIST & COUNT
# ============================================================

@router.get("")
async def list_notifications(
    is_read: Optional[bool] = Query(None),
    type: Optional[str] = Query(None),
    limit: int = Query(default=50, ge=1, le=200),
    skip: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    notifications = await NotificationService.list_for_user(
        db, user.id, is_read=is_read, type=type, limit=limit, skip=skip,
    )
    return [_notif_out(n) for n in notifications]


@router.get("/unread-count")
async def unread_count(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    return {"unread": await NotificationService.unread_count(db, user.id)}


# ============================================================
# SETTINGS
# ============================================================

@router.get("/settings")
async def get_settings(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    return _settings_out(await NotificationService.get_settings(db, user.id))


@router.patch("/settings")
async def update_settings(
    body: NotificationSettingsUpdate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    settings = await NotificationService.update_settings(db, user.id, body.model_dump(exclude_unset=True))
    return _settings_out(settings)


# ============================================================
# SINGLE NOTIFICATION
# ============================================================

@router.get("/{notification_id}")
async def get_notification(
    notification_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    return _notif_out(await NotificationService.get_one(db, notification_id, user.id))


# ============================================================
# MARK READ
# ============================================================

@router.post("/read-all")
async def mark_all_read(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    return {"marked": await NotificationService.mark_all_read(db, user.id)}


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    return _notif_out(await NotificationService.mark_read(db, notification_id, user.id))


# ============================================================
# DELETE
# ============================================================

@router.delete("/clear-all")
async def clear_all(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    return {"cleared": await NotificationService.clear_all(db, user.id)}


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    await NotificationService.delete(db, notification_id, user.id)
    return {"status": "deleted"}
