# models.py — Database models for ProjectDesk
# - Integer primary keys (route parameters are parsed as integers)
# - Users are soft-deleted (deleted_at); projects are hard-deleted and their
#   logs/comments cascade with them
# - Roles are global rows; company scoping is a naming convention on permissions
# - Kanban membership uniqueness and column position >= 0 are enforced by the store

from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer, Table,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def ensure_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================
# ENUMS
# ============================================================

class UserStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    PENDING = "PENDING"


class UserScope(str, PyEnum):
    GLOBAL = "GLOBAL"
    COMPANY = "COMPANY"


class CompanyType(str, PyEnum):
    PROJECT = "PROJECT"
    CUSTOMER = "CUSTOMER"


class InvitationStatus(str, PyEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class AuditEventType(str, PyEnum):
    # Auth events
    USER_LOGIN = "auth.user.login"
    USER_LOGOUT = "auth.user.logout"
    USER_REGISTERED = "auth.user.registered"
    # Directory events
    USER_CREATED = "directory.user.created"
    USER_UPDATED = "directory.user.updated"
    USER_DEACTIVATED = "directory.user.deactivated"
    USER_ACTIVATED = "directory.user.activated"
    USER_REMOVED = "directory.user.removed"
    USER_ADDED_TO_COMPANY = "directory.user.added_to_company"
    ROLE_ASSIGNED = "directory.role.assigned"
    ROLE_REMOVED = "directory.role.removed"
    INVITATION_CREATED = "directory.invitation.created"
    INVITATION_CANCELLED = "directory.invitation.cancelled"


# ============================================================
# COMPANIES & REFERENCE DATA
# ============================================================

class Company(Base):
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    inn = Column(String(32), unique=True, nullable=True)  # tax identification number
    type = Column(SQLEnum(CompanyType), nullable=False, default=CompanyType.PROJECT)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    profiles = relationship("UserProfile", back_populates="company")


class Region(Base):
    __tablename__ = "regions"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ProjectStatus(Base):
    __tablename__ = "project_statuses"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ProjectType(Base):
    __tablename__ = "project_types"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    full_name = Column(String(255), nullable=False, default="")
    phone = Column(String(64), nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    status = Column(SQLEnum(UserStatus), nullable=False, default=UserStatus.ACTIVE, index=True)
    region_id = Column(Integer, ForeignKey("regions.id", ondelete="SET NULL"), nullable=True)
    # SHA-256 digest of the current refresh token; NULL after logout
    refresh_token_hash = Column(String(64), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    # Soft delete: users are never removed from the table
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    profile = relationship("UserProfile", back_populates="user", uselist=False)
    user_roles = relationship("UserRole", back_populates="user", foreign_keys="UserRole.user_id")


class UserProfile(Base):
    """Company link and personal details. A user belongs to at most one company."""
    __tablename__ = "user_profiles"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True, index=True)
    position = Column(String(255), nullable=True)
    avatar = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="profile")
    company = relationship("Company", back_populates="profiles")


# ============================================================
# ROLES & PERMISSIONS
# ============================================================

class Permission(Base):
    __tablename__ = "permissions"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), unique=True, nullable=False, index=True)  # e.g. "kanban-boards:members:add"
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    role_permissions = relationship("RolePermission", back_populates="permission")


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    role_permissions = relationship("RolePermission", back_populates="role")
    user_roles = relationship("UserRole", back_populates="role")


class RolePermission(Base):
    """Grant of a permission to a role"""
    __tablename__ = "role_permissions"

    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    permission_id = Column(Integer, ForeignKey("permissions.id", ondelete="RESTRICT"), primary_key=True)
    granted_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    granted_at = Column(DateTime(timezone=True), default=utcnow)

    role = relationship("Role", back_populates="role_permissions")
    permission = relationship("Permission", back_populates="role_permissions")


class UserRole(Base):
    __tablename__ = "user_roles"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    assigned_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assigned_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User", back_populates="user_roles", foreign_keys=[user_id])
    role = relationship("Role", back_populates="user_roles")


class RegistrationInvitation(Base):
    __tablename__ = "registration_invitations"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, index=True)
    code = Column(String(64), unique=True, nullable=False)
    status = Column(SQLEnum(InvitationStatus), nullable=False, default=InvitationStatus.PENDING, index=True)
    invited_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# KANBAN
# ============================================================

class KanbanBoard(Base):
    __tablename__ = "kanban_boards"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    code = Column(String(32), unique=True, nullable=False)  # self-service join code
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    columns = relationship(
        "KanbanColumn", back_populates="board",
        order_by=lambda: [KanbanColumn.position, KanbanColumn.id],
        passive_deletes=True,
    )
    members = relationship("KanbanBoardMember", back_populates="board", passive_deletes=True)


class KanbanColumn(Base):
    __tablename__ = "kanban_columns"

    id = Column(Integer, primary_key=True)
    board_id = Column(Integer, ForeignKey("kanban_boards.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    # Not unique: ties are ordered by id
    position = Column(Integer, nullable=False, default=0)
    color = Column(String(64), nullable=True)
    description = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    board = relationship("KanbanBoard", back_populates="columns")

    __table_args__ = (
        CheckConstraint("position >= 0", name="ck_kanban_column_position_non_negative"),
        Index("idx_kanban_column_board_pos", "board_id", "position"),
    )


class KanbanBoardMember(Base):
    __tablename__ = "kanban_board_members"

    id = Column(Integer, primary_key=True)
    board_id = Column(Integer, ForeignKey("kanban_boards.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    board = relationship("KanbanBoard", back_populates="members")
    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("board_id", "user_id", name="uq_kanban_board_member"),
    )


# ============================================================
# PROJECTS
# ============================================================

project_executors = Table(
    "project_executors",
    Base.metadata,
    Column("project_id", Integer, ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, index=True)
    code = Column(String(64), nullable=True)
    project_type_id = Column(Integer, ForeignKey("project_types.id", ondelete="RESTRICT"), nullable=True)
    region_id = Column(Integer, ForeignKey("regions.id", ondelete="RESTRICT"), nullable=False, index=True)
    status_id = Column(Integer, ForeignKey("project_statuses.id", ondelete="RESTRICT"), nullable=False, index=True)
    contact_name = Column(String(255), nullable=False)
    contact_phone = Column(String(64), nullable=True)
    contact_email = Column(String(255), nullable=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True, index=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    kanban_column_id = Column(Integer, ForeignKey("kanban_columns.id", ondelete="RESTRICT"), nullable=False, index=True)
    attached_files = Column(JSON, nullable=False, default=list)
    expected_deadline = Column(DateTime(timezone=True), nullable=True)
    comments = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    executors = relationship("User", secondary=project_executors, order_by="User.id")
    kanban_column = relationship("KanbanColumn")
    logs = relationship("ProjectLog", back_populates="project", passive_deletes=True)


class ProjectLog(Base):
    """Append-only field change history for a project"""
    __tablename__ = "project_logs"

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    changed_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    field = Column(String(64), nullable=False)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    project = relationship("Project", back_populates="logs")
    user = relationship("User")

    __table_args__ = (
        Index("idx_project_log_project_time", "project_id", "created_at"),
    )


class ProjectComment(Base):
    __tablename__ = "project_comments"

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    author = relationship("User")


# ============================================================
# NOTIFICATIONS & AUDIT
# ============================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(64), nullable=False)  # e.g. "project.assigned"
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=True)
    entity_type = Column(String(64), nullable=True)
    entity_id = Column(Integer, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_notification_user_read", "user_id", "is_read"),
    )


class NotificationSettings(Base):
    """Per-user notification preferences; a user without a row gets the defaults"""
    __tablename__ = "notification_settings"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    sound_enabled = Column(Boolean, nullable=False, default=True)
    sound_volume = Column(Integer, nullable=False, default=50)
    project_created = Column(Boolean, nullable=False, default=True)
    project_updated = Column(Boolean, nullable=False, default=True)
    project_assigned = Column(Boolean, nullable=False, default=True)
    project_comment = Column(Boolean, nullable=False, default=True)
    user_mentioned = Column(Boolean, nullable=False, default=True)
    file_uploaded = Column(Boolean, nullable=False, default=True)
    deadline_approaching = Column(Boolean, nullable=False, default=True)
    status_changed = Column(Boolean, nullable=False, default=True)
    system_announcement = Column(Boolean, nullable=False, default=True)
    kanban_member_added = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("sound_volume >= 0 AND sound_volume <= 100", name="ck_notification_settings_volume"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    event_type = Column(SQLEnum(AuditEventType), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    company_id = Column(Integer, nullable=True)
    resource_type = Column(String(64), nullable=True)
    resource_id = Column(String(64), nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
