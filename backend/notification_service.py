# notification_service.py — In-app notification records
# Delivery (SSE, email) belongs to an external collaborator; this module only
# records "user X should be told Y" rows.
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import NotFoundError
from models import Notification, NotificationSettings, utcnow

logger = logging.getLogger("projectdesk.notifications")

# Notification types
PROJECT_ASSIGNED = "project.assigned"
KANBAN_MEMBER_ADDED = "kanban.member_added"

# Notification type -> NotificationSettings switch. Types not listed are always recorded.
TYPE_TOGGLES = {
    "project.created": "project_created",
    "project.updated": "project_updated",
    PROJECT_ASSIGNED: "project_assigned",
    "project.comment": "project_comment",
    "user.mentioned": "user_mentioned",
    "file.uploaded": "file_uploaded",
    "project.deadline_approaching": "deadline_approaching",
    "project.status_changed": "status_changed",
    "system.announcement": "system_announcement",
    KANBAN_MEMBER_ADDED: "kanban_member_added",
}

SETTINGS_FIELDS = ("sound_enabled", "sound_volume") + tuple(TYPE_TOGGLES.values())


class NotificationService:

    @staticmethod
    async def is_enabled(db: AsyncSession, user_id: int, type: str) -> bool:
        toggle = TYPE_TOGGLES.get(type)
        if toggle is None:
            return True
        # The caller may have pending rows that must only flush on its own commit
        with db.no_autoflush:
            enabled = (await db.execute(
                select(getattr(NotificationSettings, toggle)).where(NotificationSettings.user_id == user_id)
            )).scalar_one_or_none()
        return enabled is not False

    @staticmethod
    async def queue(
        db: AsyncSession,
        user_id: int,
        type: str,
        title: str,
        message: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        created_by: Optional[int] = None,
    ) -> Optional[Notification]:
        """Stage a notification in the caller's transaction unless the user muted its type."""
        if not await NotificationService.is_enabled(db, user_id, type):
            logger.debug(f"User {user_id} muted {type}; notification skipped")
            return None
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
            created_by=created_by,
        )
        db.add(notification)
        logger.debug(f"Queued {type} notification for user {user_id}")
        return notification

    @staticmethod
    async def list_for_user(
        db: AsyncSession,
        user_id: int,
        is_read: Optional[bool] = None,
        type: Optional[str] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> List[Notification]:
        query = select(Notification).where(
            Notification.user_id == user_id,
            Notification.is_deleted.is_(False),
        )
        if is_read is not None:
            query = query.where(Notification.is_read.is_(is_read))
        if type:
            query = query.where(Notification.type == type)
        query = query.order_by(Notification.created_at.desc(), Notification.id.desc())
        result = await db.execute(query.offset(skip).limit(limit))
        return list(result.scalars().all())

    @staticmethod
    async def unread_count(db: AsyncSession, user_id: int) -> int:
        return (await db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
                Notification.is_deleted.is_(False),
            )
        )).scalar() or 0

    @staticmethod
    async def get_one(db: AsyncSession, notification_id: int, user_id: int) -> Notification:
        result = await db.execute(
            select(Notification).where(
                Notification.id == notification_id,
                Notification.user_id == user_id,
                Notification.is_deleted.is_(False),
            )
        )
        notification = result.scalar_one_or_none()
        if not notification:
            raise NotFoundError("Notification not found")
        return notification

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: int, user_id: int) -> Notification:
        notification = await NotificationService.get_one(db, notification_id, user_id)
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = utcnow()
            await db.commit()
        return notification

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: int) -> int:
        result = await db.execute(
            update(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
                Notification.is_deleted.is_(False),
            )
            .values(is_read=True, read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount or 0

    @staticmethod
    async def delete(db: AsyncSession, notification_id: int, user_id: int) -> None:
        notification = await NotificationService.get_one(db, notification_id, user_id)
        notification.is_deleted = True
        await db.commit()

    @staticmethod
    async def clear_all(db: AsyncSession, user_id: int) -> int:
        result = await db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_deleted.is_(False))
            .values(is_deleted=True)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info(f"Cleared {result.rowcount or 0} notifications for user {user_id}")
        return result.rowcount or 0

    # ============================================================
    # SETTINGS
    # ============================================================

    @staticmethod
    async def get_settings(db: AsyncSession, user_id: int) -> NotificationSettings:
        """The user's preferences, created with defaults on first access"""
        query = select(NotificationSettings).where(NotificationSettings.user_id == user_id)
        settings = (await db.execute(query)).scalar_one_or_none()
        if settings is not None:
            return settings

        settings = NotificationSettings(user_id=user_id)
        db.add(settings)
        try:
            await db.commit()
        except IntegrityError:
            # Created by a concurrent request
            await db.rollback()
            return (await db.execute(query)).scalar_one()
        await db.refresh(settings)
        return settings

    @staticmethod
    async def update_settings(db: AsyncSession, user_id: int, data: Dict[str, Any]) -> NotificationSettings:
        settings = await NotificationService.get_settings(db, user_id)
        for field in SETTINGS_FIELDS:
            if field in data:
                setattr(settings, field, data[field])
        await db.commit()
        await db.refresh(settings)
        logger.info(f"Notification settings updated for user {user_id}")
        return settings
