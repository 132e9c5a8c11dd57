# role_service.py — Role and permission catalog management
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from authorization import (
    PERMISSION_CATALOG, DEFAULT_ROLE_PERMISSIONS, DEFAULT_ROLE_DESCRIPTIONS,
)
from errors import NotFoundError, ConflictError
from models import Role, Permission, RolePermission, UserRole

logger = logging.getLogger("projectdesk.roles")


def _role_query():
    return select(Role).options(
        selectinload(Role.role_permissions).selectinload(RolePermission.permission)
    ).execution_options(populate_existing=True)


async def _resolve_permissions(db: AsyncSession, permission_ids: Iterable[int]) -> List[int]:
    wanted = list(dict.fromkeys(permission_ids))
    if not wanted:
        return []
    found = set((await db.execute(
        select(Permission.id).where(Permission.id.in_(wanted))
    )).scalars().all())
    missing = [pid for pid in wanted if pid not in found]
    if missing:
        raise NotFoundError(
            f"Permissions not found: {', '.join(str(pid) for pid in missing)}",
            missing_ids=missing,
        )
    return wanted


class RoleService:

    @staticmethod
    async def get_role(db: AsyncSession, role_id: int) -> Role:
        role = (await db.execute(_role_query().where(Role.id == role_id))).scalar_one_or_none()
        if not role:
            raise NotFoundError("Role not found")
        return role

    @staticmethod
    async def get_role_by_name(db: AsyncSession, name: str) -> Optional[Role]:
        return (await db.execute(_role_query().where(Role.name == name))).scalar_one_or_none()

    @staticmethod
    async def list_roles(db: AsyncSession) -> List[Role]:
        result = await db.execute(_role_query().order_by(Role.name))
        return list(result.scalars().all())

    @staticmethod
    async def _ensure_name_free(db: AsyncSession, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Role.id).where(Role.name == name)
        if exclude_id is not None:
            stmt = stmt.where(Role.id != exclude_id)
        if (await db.execute(stmt)).scalar_one_or_none() is not None:
            raise ConflictError(f"Role '{name}' already exists")

    @staticmethod
    async def create_role(
        db: AsyncSession,
        name: str,
        description: Optional[str] = None,
        permission_ids: Iterable[int] = (),
        created_by: Optional[int] = None,
    ) -> Role:
        """Create the role and its grants in one transaction"""
        await RoleService._ensure_name_free(db, name)
        permission_ids = await _resolve_permissions(db, permission_ids)

        role = Role(name=name, description=description, created_by=created_by)
        db.add(role)
        try:
            await db.flush()
            for pid in permission_ids:
                db.add(RolePermission(role_id=role.id, permission_id=pid, granted_by=created_by))
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError(f"Role '{name}' already exists")

        logger.info(f"Role {role.id} created: {name} with {len(permission_ids)} permissions")
        return await RoleService.get_role(db, role.id)

    @staticmethod
    async def update_role(
        db: AsyncSession,
        role_id: int,
        data: Dict[str, Any],
        granted_by: Optional[int] = None,
    ) -> Role:
        """Partial update; ``permission_ids`` replaces the whole grant set"""
        role = await RoleService.get_role(db, role_id)

        if data.get("name") is not None and data["name"] != role.name:
            await RoleService._ensure_name_free(db, data["name"], exclude_id=role_id)
            role.name = data["name"]
        if "description" in data:
            role.description = data["description"]

        if data.get("permission_ids") is not None:
            wanted = await _resolve_permissions(db, data["permission_ids"])
            current = {rp.permission_id: rp for rp in role.role_permissions}
            for pid, grant in current.items():
                if pid not in wanted:
                    await db.delete(grant)
            for pid in wanted:
                if pid not in current:
                    db.add(RolePermission(role_id=role_id, permission_id=pid, granted_by=granted_by))

        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError(f"Role '{data.get('name')}' already exists")

        logger.info(f"Role {role_id} updated")
        return await RoleService.get_role(db, role_id)

    @staticmethod
    async def delete_role(db: AsyncSession, role_id: int) -> None:
        role = await RoleService.get_role(db, role_id)
        await db.execute(delete(UserRole).where(UserRole.role_id == role_id))
        await db.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
        await db.execute(delete(Role).where(Role.id == role.id))
        await db.commit()
        logger.info(f"Role {role_id} deleted")

    @staticmethod
    async def user_has_role(db: AsyncSession, user_id: int, role_id: int) -> bool:
        result = await db.execute(
            select(UserRole.role_id).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
        )
        return result.scalar_one_or_none() is not None


class PermissionService:

    @staticmethod
    async def get_permission(db: AsyncSession, permission_id: int) -> Permission:
        permission = (await db.execute(
            select(Permission).where(Permission.id == permission_id)
        )).scalar_one_or_none()
        if not permission:
            raise NotFoundError("Permission not found")
        return permission

    @staticmethod
    async def list_permissions(db: AsyncSession) -> List[Permission]:
        result = await db.execute(select(Permission).order_by(Permission.name))
        return list(result.scalars().all())

    @staticmethod
    async def _ensure_name_free(db: AsyncSession, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Permission.id).where(Permission.name == name)
        if exclude_id is not None:
            stmt = stmt.where(Permission.id != exclude_id)
        if (await db.execute(stmt)).scalar_one_or_none() is not None:
            raise ConflictError(f"Permission '{name}' already exists")

    @staticmethod
    async def create_permission(db: AsyncSession, name: str, description: Optional[str] = None) -> Permission:
        await PermissionService._ensure_name_free(db, name)
        permission = Permission(name=name, description=description)
        db.add(permission)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError(f"Permission '{name}' already exists")
        await db.refresh(permission)
        logger.info(f"Permission {permission.id} created: {name}")
        return permission

    @staticmethod
    async def update_permission(db: AsyncSession, permission_id: int, data: Dict[str, Any]) -> Permission:
        permission = await PermissionService.get_permission(db, permission_id)
        if data.get("name") is not None and data["name"] != permission.name:
            await PermissionService._ensure_name_free(db, data["name"], exclude_id=permission_id)
            permission.name = data["name"]
        if "description" in data:
            permission.description = data["description"]
        await db.commit()
        await db.refresh(permission)
        return permission

    @staticmethod
    async def delete_permission(db: AsyncSession, permission_id: int) -> None:
        """Refused while any role still grants the permission"""
        permission = await PermissionService.get_permission(db, permission_id)
        role_names = (await db.execute(
            select(Role.name)
            .join(RolePermission, RolePermission.role_id == Role.id)
            .where(RolePermission.permission_id == permission_id)
            .order_by(Role.name)
        )).scalars().all()
        if role_names:
            raise ConflictError(
                f"Permission '{permission.name}' is used by roles: {', '.join(role_names)}",
                roles=list(role_names),
            )
        await db.execute(delete(Permission).where(Permission.id == permission_id))
        await db.commit()
        logger.info(f"Permission {permission_id} deleted")


async def ensure_default_roles(db: AsyncSession) -> Dict[str, Role]:
    """Idempotently seed the permission catalog and the default company roles"""
    existing = {
        p.name: p for p in (await db.execute(select(Permission))).scalars().all()
    }
    for name, description in PERMISSION_CATALOG.items():
        if name not in existing:
            permission = Permission(name=name, description=description)
            db.add(permission)
            existing[name] = permission
    await db.flush()

    roles = {}
    for role_name, permission_names in DEFAULT_ROLE_PERMISSIONS.items():
        role = (await db.execute(select(Role).where(Role.name == role_name))).scalar_one_or_none()
        if role is None:
            role = Role(name=role_name, description=DEFAULT_ROLE_DESCRIPTIONS.get(role_name))
            db.add(role)
            await db.flush()
        granted = set((await db.execute(
            select(RolePermission.permission_id).where(RolePermission.role_id == role.id)
        )).scalars().all())
        for permission_name in permission_names:
            permission_id = existing[permission_name].id
            if permission_id not in granted:
                db.add(RolePermission(role_id=role.id, permission_id=permission_id))
        roles[role_name] = role

    await db.commit()
    logger.info(f"Default roles ready: {sorted(roles)}")
    return roles
