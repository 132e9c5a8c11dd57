# kanban_service.py — Kanban boards, columns and membership
# - Non-admins reach a board only through membership; a non-member gets the
#   same Forbidden for an existing board and for an unknown id
# - Columns are ordered by (position, id) in every listing
# - Reorder applies all positions in one transaction
# - Membership uniqueness is enforced by the store (uq_kanban_board_member)

import logging
import secrets
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, func, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from auth import CurrentUser
from errors import NotFoundError, ConflictError, ForbiddenError, BadRequestError
from models import KanbanBoard, KanbanColumn, KanbanBoardMember, Project, User, utcnow
from notification_service import NotificationService, KANBAN_MEMBER_ADDED

logger = logging.getLogger("projectdesk.kanban")

BOARD_CODE_BYTES = 9  # 12 URL-safe characters
COLUMN_FIELDS = ("name", "position", "color", "description")
BOARD_FIELDS = ("name", "description")


def _column_order():
    return (KanbanColumn.position, KanbanColumn.id)


async def _is_member(db: AsyncSession, board_id: int, user_id: int) -> bool:
    result = await db.execute(
        select(KanbanBoardMember.id).where(
            KanbanBoardMember.board_id == board_id,
            KanbanBoardMember.user_id == user_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def ensure_board_access(db: AsyncSession, board_id: int, user: CurrentUser) -> None:
    """Admins pass; everyone else must hold a membership row for the board."""
    if user.is_admin:
        return
    if not await _is_member(db, board_id, user.id):
        logger.warning(f"User {user.id} denied access to kanban board {board_id}")
        raise ForbiddenError("You do not have access to this kanban board")


async def _load_board(db: AsyncSession, board_id: int, with_columns: bool = False) -> KanbanBoard:
    stmt = select(KanbanBoard).where(KanbanBoard.id == board_id)
    if with_columns:
        stmt = stmt.options(selectinload(KanbanBoard.columns)).execution_options(populate_existing=True)
    board = (await db.execute(stmt)).scalar_one_or_none()
    if not board:
        raise NotFoundError("Kanban board not found")
    return board


async def _board_columns(db: AsyncSession, board_id: int) -> List[KanbanColumn]:
    result = await db.execute(
        select(KanbanColumn)
        .where(KanbanColumn.board_id == board_id)
        .order_by(*_column_order())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


# ============================================================
# BOARDS & MEMBERSHIP
# ============================================================

class KanbanBoardService:

    @staticmethod
    def generate_code() -> str:
        return secrets.token_urlsafe(BOARD_CODE_BYTES)

    @staticmethod
    async def _unique_code(db: AsyncSession) -> str:
        while True:
            code = KanbanBoardService.generate_code()
            taken = (await db.execute(
                select(KanbanBoard.id).where(KanbanBoard.code == code)
            )).scalar_one_or_none()
            if taken is None:
                return code

    @staticmethod
    async def create_board(db: AsyncSession, name: str, description: Optional[str] = None) -> KanbanBoard:
        board = KanbanBoard(
            name=name,
            description=description,
            code=await KanbanBoardService._unique_code(db),
        )
        db.add(board)
        await db.commit()
        logger.info(f"Kanban board {board.id} created: {name}")
        return await _load_board(db, board.id, with_columns=True)

    @staticmethod
    async def list_boards(db: AsyncSession, user: CurrentUser) -> List[KanbanBoard]:
        stmt = select(KanbanBoard).options(selectinload(KanbanBoard.columns))
        if not user.is_admin:
            stmt = stmt.join(
                KanbanBoardMember, KanbanBoardMember.board_id == KanbanBoard.id
            ).where(KanbanBoardMember.user_id == user.id)
        result = await db.execute(stmt.order_by(KanbanBoard.id))
        return list(result.scalars().unique().all())

    @staticmethod
    async def get_board(db: AsyncSession, board_id: int, user: CurrentUser) -> KanbanBoard:
        await ensure_board_access(db, board_id, user)
        return await _load_board(db, board_id, with_columns=True)

    @staticmethod
    async def update_board(db: AsyncSession, board_id: int, data: Dict[str, Any], user: CurrentUser) -> KanbanBoard:
        await ensure_board_access(db, board_id, user)
        board = await _load_board(db, board_id, with_columns=True)
        for field in BOARD_FIELDS:
            if field in data:
                setattr(board, field, data[field])
        await db.commit()
        logger.info(f"Kanban board {board_id} updated: {sorted(k for k in data if k in BOARD_FIELDS)}")
        return board

    @staticmethod
    async def add_member(db: AsyncSession, board_id: int, user_id: int, added_by: Optional[int] = None) -> KanbanBoardMember:
        board = await _load_board(db, board_id)
        target = (await db.execute(
            select(User.id).where(User.id == user_id, User.deleted_at.is_(None))
        )).scalar_one_or_none()
        if target is None:
            raise NotFoundError("User not found")

        member = KanbanBoardMember(board_id=board_id, user_id=user_id)
        db.add(member)
        await NotificationService.queue(
            db, user_id, KANBAN_MEMBER_ADDED,
            title=f"You were added to the board {board.name}",
            entity_type="kanban_board", entity_id=board_id, created_by=added_by,
        )
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("User is already a member of this board")

        logger.info(f"User {user_id} added to kanban board {board_id}")
        result = await db.execute(
            select(KanbanBoardMember)
            .where(KanbanBoardMember.id == member.id)
            .options(selectinload(KanbanBoardMember.user))
        )
        return result.scalar_one()

    @staticmethod
    async def remove_member(db: AsyncSession, board_id: int, user_id: int) -> None:
        result = await db.execute(
            delete(KanbanBoardMember).where(
                KanbanBoardMember.board_id == board_id,
                KanbanBoardMember.user_id == user_id,
            )
        )
        if not result.rowcount:
            await db.rollback()
            raise NotFoundError("Membership not found")
        await db.commit()
        logger.info(f"User {user_id} removed from kanban board {board_id}")

    @staticmethod
    async def list_members(db: AsyncSession, board_id: int, user: CurrentUser) -> List[KanbanBoardMember]:
        await ensure_board_access(db, board_id, user)
        await _load_board(db, board_id)
        result = await db.execute(
            select(KanbanBoardMember)
            .where(KanbanBoardMember.board_id == board_id)
            .options(selectinload(KanbanBoardMember.user))
            .order_by(KanbanBoardMember.created_at, KanbanBoardMember.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def join_by_code(db: AsyncSession, code: str, user_id: int) -> KanbanBoard:
        """Self-service join. Joining a board twice is not an error."""
        board_id = (await db.execute(
            select(KanbanBoard.id).where(KanbanBoard.code == code)
        )).scalar_one_or_none()
        if board_id is None:
            raise NotFoundError("Kanban board not found")

        if not await _is_member(db, board_id, user_id):
            db.add(KanbanBoardMember(board_id=board_id, user_id=user_id))
            try:
                await db.commit()
                logger.info(f"User {user_id} joined kanban board {board_id} by code")
            except IntegrityError:
                # A concurrent join inserted the same row first
                await db.rollback()

        return await _load_board(db, board_id, with_columns=True)

    @staticmethod
    async def board_projects(db: AsyncSession, board_id: int, user: CurrentUser) -> List[Tuple[KanbanColumn, List[Project]]]:
        """Columns in order, each paired with its projects (newest first)"""
        await ensure_board_access(db, board_id, user)
        await _load_board(db, board_id)
        columns = await _board_columns(db, board_id)

        grouped: "OrderedDict[int, List[Project]]" = OrderedDict((c.id, []) for c in columns)
        if columns:
            result = await db.execute(
                select(Project)
                .where(Project.kanban_column_id.in_(list(grouped)))
                .options(selectinload(Project.executors))
                .order_by(Project.created_at.desc(), Project.id.desc())
            )
            for project in result.scalars().all():
                grouped[project.kanban_column_id].append(project)
        return [(c, grouped[c.id]) for c in columns]


# ============================================================
# COLUMNS
# ============================================================

class KanbanColumnService:

    @staticmethod
    async def _get_column(db: AsyncSession, column_id: int) -> KanbanColumn:
        column = (await db.execute(
            select(KanbanColumn).where(KanbanColumn.id == column_id)
        )).scalar_one_or_none()
        if not column:
            raise NotFoundError("Kanban column not found")
        return column

    @staticmethod
    async def next_position(db: AsyncSession, board_id: int) -> int:
        current_max = (await db.execute(
            select(func.max(KanbanColumn.position)).where(KanbanColumn.board_id == board_id)
        )).scalar()
        return (current_max if current_max is not None else -1) + 1

    @staticmethod
    async def create_column(
        db: AsyncSession,
        board_id: int,
        user: CurrentUser,
        name: str,
        position: Optional[int] = None,
        color: Optional[str] = None,
        description: Optional[str] = None,
    ) -> KanbanColumn:
        await ensure_board_access(db, board_id, user)
        await _load_board(db, board_id)

        if position is None:
            position = await KanbanColumnService.next_position(db, board_id)

        column = KanbanColumn(
            board_id=board_id,
            name=name,
            position=position,
            color=color,
            description=description,
        )
        db.add(column)
        await db.commit()
        await db.refresh(column)
        logger.info(f"Kanban column {column.id} created on board {board_id} at position {position}")
        return column

    @staticmethod
    async def update_column(db: AsyncSession, column_id: int, data: Dict[str, Any], user: CurrentUser) -> KanbanColumn:
        """Partial update: absent keys are untouched, explicit None clears nullable fields."""
        column = await KanbanColumnService._get_column(db, column_id)
        await ensure_board_access(db, column.board_id, user)

        for field in COLUMN_FIELDS:
            if field in data:
                setattr(column, field, data[field])
        await db.commit()
        await db.refresh(column)
        logger.info(f"Kanban column {column_id} updated")
        return column

    @staticmethod
    async def list_columns(db: AsyncSession, board_id: int, user: CurrentUser) -> List[KanbanColumn]:
        await ensure_board_access(db, board_id, user)
        await _load_board(db, board_id)
        return await _board_columns(db, board_id)

    @staticmethod
    async def reorder_columns(
        db: AsyncSession,
        items: Iterable[Tuple[int, int]],
        user: CurrentUser,
    ) -> List[KanbanColumn]:
        """Apply (column_id, position) pairs atomically and return the board's columns."""
        items = list(items)
        if not items:
            return []

        requested_ids = list(OrderedDict.fromkeys(column_id for column_id, _ in items))
        rows = (await db.execute(
            select(KanbanColumn.id, KanbanColumn.board_id).where(KanbanColumn.id.in_(requested_ids))
        )).all()
        board_of = {row.id: row.board_id for row in rows}

        missing = [column_id for column_id in requested_ids if column_id not in board_of]
        if missing:
            raise NotFoundError(
                f"Kanban columns not found: {', '.join(str(i) for i in missing)}",
                missing_ids=missing,
            )

        board_ids = set(board_of.values())
        if len(board_ids) != 1:
            raise BadRequestError("All columns to reorder must belong to the same board")
        board_id = board_ids.pop()

        await ensure_board_access(db, board_id, user)

        now = utcnow()
        try:
            for column_id, position in items:
                await db.execute(
                    update(KanbanColumn)
                    .where(KanbanColumn.id == column_id)
                    .values(position=position, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            logger.warning(f"Reorder of board {board_id} rolled back: {exc.orig}")
            raise BadRequestError("Column reorder failed; no positions were changed")

        logger.info(f"Reordered {len(items)} columns on kanban board {board_id}")
        return await _board_columns(db, board_id)

    @staticmethod
    async def delete_column(db: AsyncSession, column_id: int, user: CurrentUser) -> None:
        column = await KanbanColumnService._get_column(db, column_id)
        await ensure_board_access(db, column.board_id, user)

        project_count = (await db.execute(
            select(func.count(Project.id)).where(Project.kanban_column_id == column_id)
        )).scalar() or 0
        if project_count:
            raise ConflictError(
                "Cannot delete a column that still contains projects",
                project_count=project_count,
            )

        await db.delete(column)
        await db.commit()
        logger.info(f"Kanban column {column_id} deleted")
