# project_service.py — Projects, their change log and comments
# - update() diffs an allow-list of fields and writes one ProjectLog row per
#   changed field; values are compared in their logged string form
# - update_status() and move_to_kanban_column() always write exactly one row
# - Projects are hard-deleted; logs, comments and executor links cascade
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from errors import NotFoundError
from models import (
    Project, ProjectLog, ProjectComment, ProjectStatus, KanbanColumn, User,
    project_executors, ensure_utc,
)
from notification_service import NotificationService, PROJECT_ASSIGNED

logger = logging.getLogger("projectdesk.projects")

LOGGED_FIELDS = (
    "name", "code", "project_type_id", "region_id", "status_id",
    "contact_name", "contact_phone", "contact_email", "company_id",
    "kanban_column_id", "expected_deadline", "comments", "attached_files",
)

REFERENCE_ERROR = "Referenced region, status, project type, company or kanban column not found"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    value = ensure_utc(value)
    return value.astimezone(timezone.utc) if value is not None else None


def log_value(value: Any) -> Optional[str]:
    """String form used both for change detection and for ProjectLog rows"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value).isoformat()
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def _normalize(field: str, value: Any) -> Any:
    if field == "expected_deadline":
        return _as_utc(value)
    if field == "attached_files":
        return list(value or [])
    return value


def project_query():
    return (
        select(Project)
        .options(selectinload(Project.executors))
        .execution_options(populate_existing=True)
    )


async def _load_executors(db: AsyncSession, executor_ids: Iterable[int]) -> List[User]:
    wanted = list(dict.fromkeys(executor_ids))
    if not wanted:
        return []
    result = await db.execute(
        select(User).where(User.id.in_(wanted), User.deleted_at.is_(None))
    )
    users = {u.id: u for u in result.scalars().all()}
    missing = [uid for uid in wanted if uid not in users]
    if missing:
        raise NotFoundError(
            f"Executors not found: {', '.join(str(uid) for uid in missing)}",
            missing_ids=missing,
        )
    return [users[uid] for uid in wanted]


async def _notify_assigned(db: AsyncSession, project: Project, users: Iterable[User], actor_id: Optional[int]) -> None:
    for user in users:
        await NotificationService.queue(
            db, user.id, PROJECT_ASSIGNED,
            title=f"You were assigned to project {project.name}",
            entity_type="project", entity_id=project.id, created_by=actor_id,
        )


class ProjectService:

    @staticmethod
    async def get_project(db: AsyncSession, project_id: int) -> Project:
        project = (await db.execute(project_query().where(Project.id == project_id))).scalar_one_or_none()
        if not project:
            raise NotFoundError("Project not found")
        return project

    @staticmethod
    async def list_projects(
        db: AsyncSession,
        region_id: Optional[int] = None,
        status_id: Optional[int] = None,
        project_type_id: Optional[int] = None,
        company_id: Optional[int] = None,
        executor_id: Optional[int] = None,
        kanban_column_id: Optional[int] = None,
        board_id: Optional[int] = None,
    ) -> List[Project]:
        query = project_query()
        for column, value in (
            (Project.region_id, region_id),
            (Project.status_id, status_id),
            (Project.project_type_id, project_type_id),
            (Project.company_id, company_id),
            (Project.kanban_column_id, kanban_column_id),
        ):
            if value is not None:
                query = query.where(column == value)
        if executor_id is not None:
            query = query.join(
                project_executors, project_executors.c.project_id == Project.id
            ).where(project_executors.c.user_id == executor_id)
        if board_id is not None:
            query = query.join(KanbanColumn, KanbanColumn.id == Project.kanban_column_id).where(
                KanbanColumn.board_id == board_id
            )
        result = await db.execute(query.order_by(Project.created_at.desc(), Project.id.desc()))
        return list(result.scalars().unique().all())

    @staticmethod
    async def create(db: AsyncSession, data: Dict[str, Any], created_by: int) -> Project:
        executors = await _load_executors(db, data.get("executor_ids") or [])

        project = Project(created_by=created_by)
        for field in LOGGED_FIELDS:
            if field in data:
                setattr(project, field, _normalize(field, data[field]))
        if project.attached_files is None:
            project.attached_files = []
        project.executors = executors
        db.add(project)
        try:
            await db.flush()
            await _notify_assigned(db, project, executors, created_by)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise NotFoundError(REFERENCE_ERROR)

        logger.info(f"Project {project.id} created by {created_by} in column {project.kanban_column_id}")
        return await ProjectService.get_project(db, project.id)

    @staticmethod
    async def update(db: AsyncSession, project_id: int, data: Dict[str, Any], updated_by: int) -> Project:
        """Apply a partial update and log every field whose value changed"""
        project = await ProjectService.get_project(db, project_id)

        changed = []
        for field in LOGGED_FIELDS:
            if field not in data:
                continue
            new_value = _normalize(field, data[field])
            old_text = log_value(getattr(project, field))
            new_text = log_value(new_value)
            if old_text == new_text:
                continue
            setattr(project, field, new_value)
            db.add(ProjectLog(
                project_id=project_id, changed_by=updated_by,
                field=field, old_value=old_text, new_value=new_text,
            ))
            changed.append(field)

        if data.get("executor_ids") is not None:
            executors = await _load_executors(db, data["executor_ids"])
            previous = {u.id for u in project.executors}
            project.executors = executors
            await _notify_assigned(db, project, [u for u in executors if u.id not in previous], updated_by)

        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise NotFoundError(REFERENCE_ERROR)

        logger.info(f"Project {project_id} updated by {updated_by}; changed fields: {changed}")
        return await ProjectService.get_project(db, project_id)

    @staticmethod
    async def _transition(db: AsyncSession, project: Project, field: str, value: int, user_id: int) -> Project:
        db.add(ProjectLog(
            project_id=project.id, changed_by=user_id, field=field,
            old_value=log_value(getattr(project, field)), new_value=log_value(value),
        ))
        setattr(project, field, value)
        await db.commit()
        logger.info(f"Project {project.id} {field} set to {value} by {user_id}")
        return await ProjectService.get_project(db, project.id)

    @staticmethod
    async def update_status(db: AsyncSession, project_id: int, status_id: int, user_id: int) -> Project:
        project = await ProjectService.get_project(db, project_id)
        exists = (await db.execute(
            select(ProjectStatus.id).where(ProjectStatus.id == status_id)
        )).scalar_one_or_none()
        if exists is None:
            raise NotFoundError("Project status not found")
        return await ProjectService._transition(db, project, "status_id", status_id, user_id)

    @staticmethod
    async def move_to_kanban_column(db: AsyncSession, project_id: int, column_id: int, user_id: int) -> Project:
        """Any column to any column; no workflow graph is enforced"""
        project = await ProjectService.get_project(db, project_id)
        exists = (await db.execute(
            select(KanbanColumn.id).where(KanbanColumn.id == column_id)
        )).scalar_one_or_none()
        if exists is None:
            raise NotFoundError("Kanban column not found")
        return await ProjectService._transition(db, project, "kanban_column_id", column_id, user_id)

    @staticmethod
    async def remove(db: AsyncSession, project_id: int) -> None:
        result = await db.execute(delete(Project).where(Project.id == project_id))
        if not result.rowcount:
            await db.rollback()
            raise NotFoundError("Project not found")
        await db.commit()
        logger.info(f"Project {project_id} deleted")

    @staticmethod
    async def check_name(db: AsyncSession, name: str) -> Dict[str, Any]:
        taken = (await db.execute(
            select(Project.id).where(Project.name == name).limit(1)
        )).scalar_one_or_none()
        return {"name": name, "available": taken is None}

    @staticmethod
    async def _ensure_exists(db: AsyncSession, project_id: int) -> None:
        found = (await db.execute(
            select(Project.id).where(Project.id == project_id)
        )).scalar_one_or_none()
        if found is None:
            raise NotFoundError("Project not found")

    @staticmethod
    async def list_logs(db: AsyncSession, project_id: int) -> List[ProjectLog]:
        await ProjectService._ensure_exists(db, project_id)
        result = await db.execute(
            select(ProjectLog)
            .where(ProjectLog.project_id == project_id)
            .options(selectinload(ProjectLog.user))
            .order_by(ProjectLog.created_at.desc(), ProjectLog.id.desc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def add_comment(db: AsyncSession, project_id: int, message: str, author_id: int) -> ProjectComment:
        await ProjectService._ensure_exists(db, project_id)
        comment = ProjectComment(project_id=project_id, author_id=author_id, message=message)
        db.add(comment)
        await db.commit()
        result = await db.execute(
            select(ProjectComment)
            .where(ProjectComment.id == comment.id)
            .options(selectinload(ProjectComment.author))
        )
        return result.scalar_one()

    @staticmethod
    async def list_comments(db: AsyncSession, project_id: int) -> List[ProjectComment]:
        await ProjectService._ensure_exists(db, project_id)
        result = await db.execute(
            select(ProjectComment)
            .where(ProjectComment.project_id == project_id)
            .options(selectinload(ProjectComment.author))
            .order_by(ProjectComment.created_at.desc(), ProjectComment.id.desc())
        )
        return list(result.scalars().all())
