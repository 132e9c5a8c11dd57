# user_service.py — System-wide user administration
# Users are soft-deleted (deleted_at + INACTIVE) and then invisible to every lookup.
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from audit import record_audit
from auth import AuthService
from errors import NotFoundError, ConflictError
from models import (
    User, UserProfile, UserRole, Role, Company, UserStatus, AuditEventType, utcnow,
)

logger = logging.getLogger("projectdesk.users")

USER_FIELDS = ("full_name", "phone", "region_id", "is_admin", "status")
PROFILE_FIELDS = ("position", "avatar")


def user_query():
    """Non-deleted users with profile and roles eagerly loaded"""
    return (
        select(User)
        .where(User.deleted_at.is_(None))
        .options(
            selectinload(User.profile),
            selectinload(User.user_roles).selectinload(UserRole.role),
        )
        .execution_options(populate_existing=True)
    )


async def ensure_email_free(db: AsyncSession, email: str, exclude_id: Optional[int] = None) -> None:
    stmt = select(User.id).where(User.email == email)
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    if (await db.execute(stmt)).scalar_one_or_none() is not None:
        raise ConflictError("User with this email already exists")


async def ensure_company_exists(db: AsyncSession, company_id: int) -> None:
    found = (await db.execute(
        select(Company.id).where(Company.id == company_id)
    )).scalar_one_or_none()
    if found is None:
        raise NotFoundError("Company not found")


async def ensure_roles_exist(db: AsyncSession, role_ids: Iterable[int]) -> List[int]:
    wanted = list(dict.fromkeys(role_ids))
    if not wanted:
        return []
    found = set((await db.execute(select(Role.id).where(Role.id.in_(wanted)))).scalars().all())
    missing = [rid for rid in wanted if rid not in found]
    if missing:
        raise NotFoundError(
            f"Roles not found: {', '.join(str(rid) for rid in missing)}",
            missing_ids=missing,
        )
    return wanted


def stage_profile(db: AsyncSession, user: User, company_id: Optional[int], **fields: Any) -> UserProfile:
    """Create or update the user's profile in the current transaction"""
    profile = user.profile
    if profile is None:
        profile = UserProfile(user_id=user.id)
        db.add(profile)
        user.profile = profile
    profile.company_id = company_id
    for key, value in fields.items():
        setattr(profile, key, value)
    return profile


class UserService:

    @staticmethod
    async def get_user(db: AsyncSession, user_id: int) -> User:
        user = (await db.execute(user_query().where(User.id == user_id))).scalar_one_or_none()
        if not user:
            raise NotFoundError("User not found")
        return user

    @staticmethod
    async def list_users(
        db: AsyncSession,
        status: Optional[UserStatus] = None,
        company_id: Optional[int] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[User]:
        query = user_query()
        if status is not None:
            query = query.where(User.status == status)
        if company_id is not None:
            query = query.join(UserProfile, UserProfile.user_id == User.id).where(
                UserProfile.company_id == company_id
            )
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(User.email.ilike(pattern), User.full_name.ilike(pattern)))
        result = await db.execute(query.order_by(User.id).offset(skip).limit(limit))
        return list(result.scalars().all())

    @staticmethod
    async def create_user(db: AsyncSession, data: Dict[str, Any], created_by: Optional[int] = None) -> User:
        await ensure_email_free(db, data["email"])
        company_id = data.get("company_id")
        if company_id is not None:
            await ensure_company_exists(db, company_id)
        role_ids = await ensure_roles_exist(db, data.get("role_ids") or [])

        user = User(
            email=data["email"],
            password_hash=AuthService.hash_password(data["password"]),
            full_name=data.get("full_name") or "",
            phone=data.get("phone"),
            region_id=data.get("region_id"),
            is_admin=bool(data.get("is_admin", False)),
            status=data.get("status") or UserStatus.ACTIVE,
        )
        db.add(user)
        try:
            await db.flush()
            profile = UserProfile(user_id=user.id, company_id=company_id, position=data.get("position"))
            db.add(profile)
            for role_id in role_ids:
                db.add(UserRole(user_id=user.id, role_id=role_id, assigned_by=created_by))
            record_audit(
                db, AuditEventType.USER_CREATED, user_id=created_by, company_id=company_id,
                resource_type="user", resource_id=user.id,
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("User with this email already exists")

        logger.info(f"User {user.id} created by {created_by}")
        return await UserService.get_user(db, user.id)

    @staticmethod
    async def update_user(db: AsyncSession, user_id: int, data: Dict[str, Any], updated_by: Optional[int] = None) -> User:
        user = await UserService.get_user(db, user_id)

        if data.get("email") and data["email"] != user.email:
            await ensure_email_free(db, data["email"], exclude_id=user_id)
            user.email = data["email"]
        if data.get("password"):
            user.password_hash = AuthService.hash_password(data["password"])
        for field in USER_FIELDS:
            if field in data and data[field] is not None:
                setattr(user, field, data[field])

        if "company_id" in data or any(f in data for f in PROFILE_FIELDS):
            company_id = data.get("company_id", user.profile.company_id if user.profile else None)
            if company_id is not None:
                await ensure_company_exists(db, company_id)
            stage_profile(
                db, user, company_id,
                **{f: data[f] for f in PROFILE_FIELDS if f in data},
            )

        record_audit(
            db, AuditEventType.USER_UPDATED, user_id=updated_by,
            resource_type="user", resource_id=user_id,
            details={"fields": sorted(k for k in data if k != "password")},
        )
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("User with this email already exists")
        logger.info(f"User {user_id} updated by {updated_by}")
        return await UserService.get_user(db, user_id)

    @staticmethod
    async def delete_user(db: AsyncSession, user_id: int, deleted_by: Optional[int] = None) -> None:
        """Soft delete: the row stays, every lookup ignores it"""
        user = await UserService.get_user(db, user_id)
        user.deleted_at = utcnow()
        user.status = UserStatus.INACTIVE
        user.refresh_token_hash = None
        record_audit(
            db, AuditEventType.USER_REMOVED, user_id=deleted_by,
            resource_type="user", resource_id=user_id,
        )
        await db.commit()
        logger.info(f"User {user_id} soft-deleted by {deleted_by}")
