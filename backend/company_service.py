# company_service.py — Companies, company-scoped users and invitations
# - A user belongs to at most one company (checked here, not by the store)
# - Every company-user operation re-verifies that the target user still
#   belongs to the company named in the route
import os
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_audit
from auth import AuthService
from authorization import COMPANY_USER
from errors import NotFoundError, ConflictError, BadRequestError
from models import (
    Company, CompanyType, User, UserProfile, UserRole, Role, RegistrationInvitation,
    InvitationStatus, UserStatus, AuditEventType, utcnow, ensure_utc,
)
from project_service import ProjectService
from role_service import RoleService
from user_service import (
    UserService, user_query, ensure_email_free, ensure_roles_exist, stage_profile,
)

logger = logging.getLogger("projectdesk.companies")

INVITATION_EXPIRE_DAYS = int(os.getenv("INVITATION_EXPIRE_DAYS", "7"))
COMPANY_FIELDS = ("name", "description", "inn", "type")
COMPANY_USER_FIELDS = ("full_name", "phone", "region_id")

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_invitation_code(company_id: Optional[int]) -> str:
    """INV-<company>-<base36 millis><random hex>"""
    millis = int(utcnow().timestamp() * 1000)
    return f"INV-{company_id or 0}-{_base36(millis)}{secrets.token_hex(4)}"


async def _default_company_role(db: AsyncSession) -> Role:
    role = await RoleService.get_role_by_name(db, COMPANY_USER)
    if not role:
        raise NotFoundError(f"Default role {COMPANY_USER} is not configured")
    return role


class CompanyService:

    # ============================================================
    # COMPANIES
    # ============================================================

    @staticmethod
    async def get_company(db: AsyncSession, company_id: int) -> Company:
        company = (await db.execute(
            select(Company).where(Company.id == company_id)
        )).scalar_one_or_none()
        if not company:
            raise NotFoundError("Company not found")
        return company

    @staticmethod
    async def list_companies(db: AsyncSession, type: Optional[CompanyType] = None) -> List[Company]:
        query = select(Company)
        if type is not None:
            query = query.where(Company.type == type)
        result = await db.execute(query.order_by(Company.name, Company.id))
        return list(result.scalars().all())

    @staticmethod
    async def _ensure_unique(db: AsyncSession, data: Dict[str, Any], exclude_id: Optional[int] = None) -> None:
        for field, label in (("name", "name"), ("inn", "tax number")):
            value = data.get(field)
            if value is None:
                continue
            stmt = select(Company.id).where(getattr(Company, field) == value)
            if exclude_id is not None:
                stmt = stmt.where(Company.id != exclude_id)
            if (await db.execute(stmt)).scalar_one_or_none() is not None:
                raise ConflictError(f"Company with this {label} already exists")

    @staticmethod
    async def create_company(db: AsyncSession, data: Dict[str, Any]) -> Company:
        await CompanyService._ensure_unique(db, data)
        company = Company(**{f: data[f] for f in COMPANY_FIELDS if data.get(f) is not None})
        db.add(company)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("Company with this name or tax number already exists")
        await db.refresh(company)
        logger.info(f"Company {company.id} created: {company.name}")
        return company

    @staticmethod
    async def update_company(db: AsyncSession, company_id: int, data: Dict[str, Any]) -> Company:
        company = await CompanyService.get_company(db, company_id)
        await CompanyService._ensure_unique(db, data, exclude_id=company_id)
        for field in COMPANY_FIELDS:
            if field in data and not (field in ("name", "type") and data[field] is None):
                setattr(company, field, data[field])
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("Company with this name or tax number already exists")
        await db.refresh(company)
        return company

    @staticmethod
    async def delete_company(db: AsyncSession, company_id: int) -> None:
        await CompanyService.get_company(db, company_id)
        await db.execute(delete(Company).where(Company.id == company_id))
        await db.commit()
        logger.info(f"Company {company_id} deleted")

    # ============================================================
    # COMPANY USERS
    # ============================================================

    @staticmethod
    async def get_company_users(db: AsyncSession, company_id: int) -> List[User]:
        await CompanyService.get_company(db, company_id)
        result = await db.execute(
            user_query()
            .join(UserProfile, UserProfile.user_id == User.id)
            .where(UserProfile.company_id == company_id)
            .order_by(User.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_company_member(db: AsyncSession, company_id: int, user_id: int) -> User:
        """The user, provided they still belong to the company"""
        await CompanyService.get_company(db, company_id)
        user = (await db.execute(
            user_query()
            .join(UserProfile, UserProfile.user_id == User.id)
            .where(User.id == user_id, UserProfile.company_id == company_id)
        )).scalar_one_or_none()
        if not user:
            raise NotFoundError("User not found in this company")
        return user

    @staticmethod
    async def add_user_to_company(db: AsyncSession, company_id: int, user_id: int, assigned_by: Optional[int] = None) -> User:
        await CompanyService.get_company(db, company_id)
        user = await UserService.get_user(db, user_id)
        if user.profile is not None and user.profile.company_id is not None:
            raise ConflictError("User already belongs to a company")

        stage_profile(db, user, company_id)
        role = await _default_company_role(db)
        if not await RoleService.user_has_role(db, user_id, role.id):
            db.add(UserRole(user_id=user_id, role_id=role.id, assigned_by=assigned_by))
        record_audit(
            db, AuditEventType.USER_ADDED_TO_COMPANY, user_id=assigned_by, company_id=company_id,
            resource_type="user", resource_id=user_id,
        )
        await db.commit()
        logger.info(f"User {user_id} added to company {company_id}")
        return await UserService.get_user(db, user_id)

    @staticmethod
    async def create_user_for_company(
        db: AsyncSession, company_id: int, data: Dict[str, Any], created_by: Optional[int] = None,
    ) -> User:
        """User, profile and roles in one transaction; COMPANY_USER when no roles are given"""
        await CompanyService.get_company(db, company_id)
        role_ids = data.get("role_ids") or [(await _default_company_role(db)).id]
        payload = dict(data, company_id=company_id, role_ids=role_ids, is_admin=False)
        return await UserService.create_user(db, payload, created_by=created_by)

    @staticmethod
    async def update_company_user(
        db: AsyncSession, company_id: int, user_id: int, data: Dict[str, Any], updated_by: Optional[int] = None,
    ) -> User:
        user = await CompanyService.get_company_member(db, company_id, user_id)
        if data.get("email") and data["email"] != user.email:
            await ensure_email_free(db, data["email"], exclude_id=user_id)
            user.email = data["email"]
        for field in COMPANY_USER_FIELDS:
            if field in data:
                setattr(user, field, data[field])
        if "position" in data:
            user.profile.position = data["position"]
        record_audit(
            db, AuditEventType.USER_UPDATED, user_id=updated_by, company_id=company_id,
            resource_type="user", resource_id=user_id, details={"fields": sorted(data)},
        )
        await db.commit()
        return await UserService.get_user(db, user_id)

    @staticmethod
    async def _set_status(
        db: AsyncSession, company_id: int, user_id: int, status: UserStatus,
        event: AuditEventType, actor_id: Optional[int],
    ) -> User:
        user = await CompanyService.get_company_member(db, company_id, user_id)
        user.status = status
        if status != UserStatus.ACTIVE:
            user.refresh_token_hash = None
        record_audit(
            db, event, user_id=actor_id, company_id=company_id,
            resource_type="user", resource_id=user_id,
        )
        await db.commit()
        logger.info(f"User {user_id} of company {company_id} set to {status.value} by {actor_id}")
        return await UserService.get_user(db, user_id)

    @staticmethod
    async def deactivate_user(db: AsyncSession, company_id: int, user_id: int, actor_id: Optional[int] = None) -> User:
        return await CompanyService._set_status(
            db, company_id, user_id, UserStatus.INACTIVE, AuditEventType.USER_DEACTIVATED, actor_id,
        )

    @staticmethod
    async def activate_user(db: AsyncSession, company_id: int, user_id: int, actor_id: Optional[int] = None) -> User:
        return await CompanyService._set_status(
            db, company_id, user_id, UserStatus.ACTIVE, AuditEventType.USER_ACTIVATED, actor_id,
        )

    @staticmethod
    async def remove_company_user(db: AsyncSession, company_id: int, user_id: int, actor_id: Optional[int] = None) -> None:
        await CompanyService.get_company_member(db, company_id, user_id)
        await UserService.delete_user(db, user_id, deleted_by=actor_id)

    @staticmethod
    async def assign_role_to_user(
        db: AsyncSession, company_id: int, user_id: int, role_id: int, assigned_by: Optional[int] = None,
    ) -> User:
        await CompanyService.get_company_member(db, company_id, user_id)
        await ensure_roles_exist(db, [role_id])
        if await RoleService.user_has_role(db, user_id, role_id):
            raise ConflictError("Role is already assigned to this user")

        db.add(UserRole(user_id=user_id, role_id=role_id, assigned_by=assigned_by))
        record_audit(
            db, AuditEventType.ROLE_ASSIGNED, user_id=assigned_by, company_id=company_id,
            resource_type="user", resource_id=user_id, details={"role_id": role_id},
        )
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("Role is already assigned to this user")
        logger.info(f"Role {role_id} assigned to user {user_id} by {assigned_by}")
        return await UserService.get_user(db, user_id)

    @staticmethod
    async def remove_role_from_user(
        db: AsyncSession, company_id: int, user_id: int, role_id: int, removed_by: Optional[int] = None,
    ) -> User:
        await CompanyService.get_company_member(db, company_id, user_id)
        await ensure_roles_exist(db, [role_id])
        result = await db.execute(
            delete(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
        )
        if not result.rowcount:
            await db.rollback()
            raise BadRequestError("Role is not assigned to this user")
        record_audit(
            db, AuditEventType.ROLE_REMOVED, user_id=removed_by, company_id=company_id,
            resource_type="user", resource_id=user_id, details={"role_id": role_id},
        )
        await db.commit()
        logger.info(f"Role {role_id} removed from user {user_id} by {removed_by}")
        return await UserService.get_user(db, user_id)

    # ============================================================
    # COMPANY PROJECTS
    # ============================================================

    @staticmethod
    async def get_company_projects(db: AsyncSession, company_id: int):
        await CompanyService.get_company(db, company_id)
        return await ProjectService.list_projects(db, company_id=company_id)

    @staticmethod
    async def create_company_project(db: AsyncSession, company_id: int, data: Dict[str, Any], created_by: int):
        await CompanyService.get_company(db, company_id)
        return await ProjectService.create(db, dict(data, company_id=company_id), created_by)

    # ============================================================
    # INVITATIONS
    # ============================================================

    @staticmethod
    async def create_invitation(
        db: AsyncSession,
        company_id: int,
        email: str,
        invited_by: Optional[int] = None,
        role_id: Optional[int] = None,
    ) -> RegistrationInvitation:
        await CompanyService.get_company(db, company_id)
        await ensure_email_free(db, email)

        pending = (await db.execute(
            select(RegistrationInvitation).where(
                RegistrationInvitation.email == email,
                RegistrationInvitation.status == InvitationStatus.PENDING,
            )
        )).scalars().all()
        now = utcnow()
        for invitation in pending:
            if ensure_utc(invitation.expires_at) > now:
                raise ConflictError("A pending invitation already exists for this email")
            invitation.status = InvitationStatus.EXPIRED

        if role_id is None:
            role_id = (await _default_company_role(db)).id
        else:
            await ensure_roles_exist(db, [role_id])

        invitation = RegistrationInvitation(
            email=email,
            code=generate_invitation_code(company_id),
            status=InvitationStatus.PENDING,
            invited_by=invited_by,
            role_id=role_id,
            company_id=company_id,
            expires_at=now + timedelta(days=INVITATION_EXPIRE_DAYS),
        )
        db.add(invitation)
        await db.flush()
        record_audit(
            db, AuditEventType.INVITATION_CREATED, user_id=invited_by, company_id=company_id,
            resource_type="invitation", resource_id=invitation.id, details={"email": email},
        )
        await db.commit()
        await db.refresh(invitation)
        logger.info(f"Invitation {invitation.id} created for {email} in company {company_id}")
        return invitation

    @staticmethod
    async def list_invitations(db: AsyncSession, company_id: int) -> List[RegistrationInvitation]:
        await CompanyService.get_company(db, company_id)
        result = await db.execute(
            select(RegistrationInvitation)
            .where(RegistrationInvitation.company_id == company_id)
            .order_by(RegistrationInvitation.created_at.desc(), RegistrationInvitation.id.desc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def cancel_invitation(
        db: AsyncSession, company_id: int, invitation_id: int, cancelled_by: Optional[int] = None,
    ) -> RegistrationInvitation:
        invitation = (await db.execute(
            select(RegistrationInvitation).where(
                RegistrationInvitation.id == invitation_id,
                RegistrationInvitation.company_id == company_id,
            )
        )).scalar_one_or_none()
        if not invitation:
            raise NotFoundError("Invitation not found")
        if invitation.status != InvitationStatus.PENDING:
            raise ConflictError(f"Invitation is already {invitation.status.value.lower()}")
        invitation.status = InvitationStatus.CANCELLED
        record_audit(
            db, AuditEventType.INVITATION_CANCELLED, user_id=cancelled_by, company_id=company_id,
            resource_type="invitation", resource_id=invitation_id,
        )
        await db.commit()
        await db.refresh(invitation)
        return invitation

    @staticmethod
    async def accept_invitation(
        db: AsyncSession, code: str, password: str, full_name: str, phone: Optional[str] = None,
    ) -> User:
        """Register the invited user with profile, company link and role in one transaction"""
        invitation = (await db.execute(
            select(RegistrationInvitation).where(RegistrationInvitation.code == code)
        )).scalar_one_or_none()
        if not invitation:
            raise NotFoundError("Invitation not found")
        if invitation.status != InvitationStatus.PENDING:
            raise ConflictError(f"Invitation is already {invitation.status.value.lower()}")
        if ensure_utc(invitation.expires_at) <= utcnow():
            invitation.status = InvitationStatus.EXPIRED
            await db.commit()
            raise ConflictError("Invitation has expired")
        await ensure_email_free(db, invitation.email)

        user = User(
            email=invitation.email,
            password_hash=AuthService.hash_password(password),
            full_name=full_name,
            phone=phone,
            status=UserStatus.ACTIVE,
        )
        db.add(user)
        try:
            await db.flush()
            db.add(UserProfile(user_id=user.id, company_id=invitation.company_id))
            if invitation.role_id is not None:
                db.add(UserRole(user_id=user.id, role_id=invitation.role_id, assigned_by=invitation.invited_by))
            invitation.status = InvitationStatus.ACCEPTED
            invitation.accepted_at = utcnow()
            record_audit(
                db, AuditEventType.USER_REGISTERED, user_id=user.id, company_id=invitation.company_id,
                resource_type="invitation", resource_id=invitation.id,
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("User with this email already exists")

        logger.info(f"Invitation {invitation.id} accepted by new user {user.id}")
        return await UserService.get_user(db, user.id)
