# authorization.py — Permission and company-scope enforcement
# Each protected route declares an AccessRule at registration time:
#   Depends(require_permission("kanban-columns:reorder"))
#   Depends(require_permission("company-users:list", company_scope="company_id"))
# Permissions are resolved from role assignments on every check; token claims
# are never consulted. Admins bypass both checks.

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Set, Tuple

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, get_current_user
from database import get_db_session
from errors import ForbiddenError
from models import Permission, RolePermission, UserRole

logger = logging.getLogger("projectdesk.authorization")

# ============================================================
# PERMISSION CATALOG & DEFAULT ROLES
# ============================================================

COMPANY_ADMIN = "COMPANY_ADMIN"
COMPANY_USER = "COMPANY_USER"

PERMISSION_CATALOG = {
    # Kanban
    "kanban-boards:create": "Create kanban boards",
    "kanban-boards:update": "Rename or describe kanban boards",
    "kanban-boards:members:add": "Add members to a kanban board",
    "kanban-boards:members:remove": "Remove members from a kanban board",
    "kanban-boards:members:list": "List kanban board members",
    "kanban-columns:create": "Create kanban columns",
    "kanban-columns:update": "Update kanban columns",
    "kanban-columns:reorder": "Reorder kanban columns",
    "kanban-columns:delete": "Delete kanban columns",
    # Company directory
    "companies:manage": "Create, update and delete companies",
    "company-users:list": "List users and invitations of own company",
    "company-users:invite": "Invite users into own company",
    "company-users:manage": "Create, update and remove users of own company",
    "company-users:deactivate": "Deactivate and activate users of own company",
    "company-users:roles": "Assign and remove roles of users in own company",
    "company-projects:list": "List projects of own company",
    "company-projects:create": "Create projects for own company",
    # Administration
    "users:manage": "Manage every user account",
    "roles:manage": "Manage roles",
    "permissions:manage": "Manage the permission catalog",
    "reference-data:manage": "Manage regions, project statuses and project types",
    # Projects
    "projects:read": "Read projects, logs and comments",
    "projects:create": "Create projects",
    "projects:update": "Update and move projects",
    "projects:delete": "Delete projects",
    "project-comments:create": "Comment on projects",
}

DEFAULT_ROLE_PERMISSIONS = {
    COMPANY_ADMIN: [
        "company-users:list", "company-users:invite", "company-users:manage",
        "company-users:deactivate", "company-users:roles",
        "company-projects:list", "company-projects:create",
        "kanban-boards:members:list",
        "projects:read", "projects:update", "project-comments:create",
    ],
    COMPANY_USER: [
        "company-projects:list",
        "kanban-boards:members:list",
        "projects:read", "project-comments:create",
    ],
}

DEFAULT_ROLE_DESCRIPTIONS = {
    COMPANY_ADMIN: "Administrator of a single company",
    COMPANY_USER: "Regular member of a single company",
}


# ============================================================
# PURE CHECKS
# ============================================================

@dataclass(frozen=True)
class AccessRule:
    permissions: Tuple[str, ...] = ()
    company_scope_param: Optional[str] = None


def missing_permissions(required: Iterable[str], granted: Set[str]) -> List[str]:
    """Required names absent from the granted set, in declared order"""
    missing = []
    for name in required:
        if name not in granted and name not in missing:
            missing.append(name)
    return missing


def parse_company_id(raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        value = raw.strip()
        # str.isdigit accepts superscripts and other digits int() rejects
        if value.isascii() and value.isdigit():
            return int(value)
    return None


def check_company_scope(user: CurrentUser, raw_company_id: Any) -> None:
    if user.is_admin:
        return
    if user.company_id is None:
        raise ForbiddenError("You must be associated with a company to access this resource")
    target = parse_company_id(raw_company_id)
    if target is None:
        raise ForbiddenError("Invalid company ID")
    if target != user.company_id:
        logger.warning(
            f"User {user.id} (company {user.company_id}) denied access to company {target}"
        )
        raise ForbiddenError("You can only access resources from your own company")


# ============================================================
# STORE-BACKED CHECKS
# ============================================================

async def load_user_permissions(db: AsyncSession, user_id: int) -> Set[str]:
    """Flatten the permissions of every role assigned to the user"""
    result = await db.execute(
        select(Permission.name)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(UserRole, UserRole.role_id == RolePermission.role_id)
        .where(UserRole.user_id == user_id)
        .distinct()
    )
    return set(result.scalars().all())


async def check_permissions(db: AsyncSession, user: CurrentUser, required: Iterable[str]) -> None:
    required = tuple(required)
    if user.is_admin or not required:
        return
    granted = await load_user_permissions(db, user.id)
    missing = missing_permissions(required, granted)
    if missing:
        logger.warning(f"User {user.id} missing permissions {missing}")
        raise ForbiddenError(
            f"Missing required permissions: {', '.join(missing)}",
            missing=missing,
        )


async def enforce_access_rule(
    db: AsyncSession,
    user: CurrentUser,
    rule: AccessRule,
    raw_company_id: Any = None,
) -> None:
    await check_permissions(db, user, rule.permissions)
    if rule.company_scope_param is not None:
        check_company_scope(user, raw_company_id)


def _company_param(request: Request, name: str) -> Any:
    if name in request.path_params:
        return request.path_params[name]
    return request.query_params.get(name)


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

def require_permission(*permissions: str, company_scope: Optional[str] = None):
    """Dependency factory: require permissions and, optionally, same-company access.

    ``company_scope`` names the path (or query) parameter carrying the target
    company id. The rule is exposed as ``dependency.access_rule``.
    """
    rule = AccessRule(permissions=tuple(permissions), company_scope_param=company_scope)

    async def _check(
        request: Request,
        user: CurrentUser = Depends(get_current_user),
        db: AsyncSession = Depends(get_db_session),
    ) -> CurrentUser:
        raw = _company_param(request, company_scope) if company_scope else None
        await enforce_access_rule(db, user, rule, raw)
        return user

    _check.access_rule = rule
    return _check
