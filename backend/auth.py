# auth.py — Credential & session management for ProjectDesk
# Features:
# - bcrypt password hashing
# - Signed access/refresh JWT pair with JTI (distinct secrets)
# - Refresh token rotation; only a SHA-256 digest is stored on the user row
# - Session context re-derived from the database on every request
# - Brute force protection
# - Bearer header or HttpOnly cookie transport

import os
import hmac
import uuid
import hashlib
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Tuple
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_audit
from database import get_db_session
from errors import (
    UnauthorizedError, InvalidCredentialsError, AccountNotActiveError,
    InvalidRefreshTokenError, UserNotFoundError, TooManyAttemptsError,
)
from models import (
    User, UserProfile, UserRole, Role, UserStatus, UserScope, AuditEventType, utcnow,
)

logger = logging.getLogger("projectdesk.auth")

# ============================================================
# CONFIGURATION
# ============================================================


def _load_secret(env_name: str) -> str:
    value = os.getenv(env_name, "")
    if not value or value.startswith("change-this"):
        logger.warning(
            f"⚠️  {env_name} not set or insecure. Generated ephemeral key. "
            f"Set {env_name} in production!"
        )
        return secrets.token_urlsafe(64)
    return value


SECRET_KEY = _load_secret("JWT_SECRET_KEY")
REFRESH_SECRET_KEY = _load_secret("JWT_REFRESH_SECRET_KEY")

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "15"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
MIN_PASSWORD_LENGTH = 8
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15
# Reserved permission-snapshot version; not yet tied to invalidation
ACL_VERSION = 1

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

security = HTTPBearer(auto_error=False)

# In-memory brute force tracker (use Redis in production)
_login_attempts: Dict[str, list] = defaultdict(list)


def validate_password_strength(v: str) -> str:
    """Shared pydantic validator for every schema that accepts a new password"""
    if len(v) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in v):
        raise ValueError("Password must contain at least one uppercase letter")
    if not any(c.isdigit() for c in v):
        raise ValueError("Password must contain at least one digit")
    return v


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    id: int
    email: str
    full_name: str
    is_admin: bool
    company_id: Optional[int] = None
    scope: str
    roles: List[str] = []
    acl_version: int = ACL_VERSION


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Login, refresh rotation, logout and bearer validation"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            # Malformed stored hash
            return False

    @staticmethod
    def hash_refresh_token(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta, secret: str) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, secret, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta, SECRET_KEY)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS)
        return AuthService._create_token(data, "refresh", delta, REFRESH_SECRET_KEY)

    @staticmethod
    def verify_access_token(token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise UnauthorizedError("Token expired")
        except JWTError:
            raise UnauthorizedError("Invalid token")
        if payload.get("type") != "access":
            raise UnauthorizedError("Invalid token type")
        return payload

    @staticmethod
    def verify_refresh_token(token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, REFRESH_SECRET_KEY, algorithms=[ALGORITHM])
        except JWTError:
            raise InvalidRefreshTokenError()
        if payload.get("type") != "refresh":
            raise InvalidRefreshTokenError()
        return payload

    @staticmethod
    def _check_brute_force(email: str) -> None:
        """Check if login attempts exceed threshold"""
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        recent = [t for t in _login_attempts.get(email, ()) if t > cutoff]
        if not recent:
            _login_attempts.pop(email, None)
            return
        _login_attempts[email] = recent
        if len(recent) >= MAX_LOGIN_ATTEMPTS:
            logger.warning(f"Login locked out for {email}")
            raise TooManyAttemptsError(
                f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes."
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    async def get_active_user_row(db: AsyncSession, user_id: int) -> Optional[User]:
        """Fetch a user that has not been soft-deleted"""
        result = await db.execute(
            select(User).where(User.id == user_id, User.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def load_session_snapshot(db: AsyncSession, user_id: int) -> Tuple[Optional[int], List[str]]:
        """Current company link and role names, straight from the store"""
        company_id = (await db.execute(
            select(UserProfile.company_id).where(UserProfile.user_id == user_id)
        )).scalar_one_or_none()
        roles = (await db.execute(
            select(Role.name)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id)
            .order_by(Role.name)
        )).scalars().all()
        return company_id, list(roles)

    @staticmethod
    def _scope_for(company_id: Optional[int]) -> str:
        return UserScope.COMPANY.value if company_id is not None else UserScope.GLOBAL.value

    @staticmethod
    async def issue_tokens(
        db: AsyncSession,
        user: User,
        stamp_login: bool = False,
        expected_digest: Optional[str] = None,
    ) -> TokenResponse:
        """Sign a fresh token pair and replace the stored refresh digest.

        With ``expected_digest`` the swap only happens while the stored digest
        still equals it, so of two refreshes racing on one token only one wins.
        """
        company_id, roles = await AuthService.load_session_snapshot(db, user.id)
        scope = AuthService._scope_for(company_id)
        token_data = {
            "sub": str(user.id),
            "email": user.email,
            "company_id": company_id,
            "scope": scope,
            "roles": roles,
            "acl_version": ACL_VERSION,
        }
        access_token = AuthService.create_access_token(token_data)
        refresh_token = AuthService.create_refresh_token(token_data)

        values = {"refresh_token_hash": AuthService.hash_refresh_token(refresh_token)}
        if stamp_login:
            values["last_login_at"] = utcnow()
        stmt = update(User).where(User.id == user.id)
        if expected_digest is not None:
            stmt = stmt.where(User.refresh_token_hash == expected_digest)
        result = await db.execute(stmt.values(**values))
        if result.rowcount != 1:
            await db.rollback()
            logger.warning(f"Refresh token for user {user.id} was rotated concurrently")
            raise InvalidRefreshTokenError()
        await db.commit()

        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            user={
                "id": user.id,
                "email": user.email,
                "full_name": user.full_name or "",
                "is_admin": bool(user.is_admin),
                "status": user.status.value if isinstance(user.status, UserStatus) else user.status,
                "company_id": company_id,
                "scope": scope,
                "roles": roles,
            },
        )

    @staticmethod
    async def login(db: AsyncSession, email: str, password: str, request: Optional[Request] = None) -> TokenResponse:
        AuthService._check_brute_force(email)

        result = await db.execute(
            select(User).where(User.email == email, User.deleted_at.is_(None))
        )
        user = result.scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(email)
            logger.warning(f"Failed login for {email}")
            raise InvalidCredentialsError()

        if user.status != UserStatus.ACTIVE:
            raise AccountNotActiveError()

        AuthService._clear_attempts(email)

        company_id = (await db.execute(
            select(UserProfile.company_id).where(UserProfile.user_id == user.id)
        )).scalar_one_or_none()
        record_audit(
            db, AuditEventType.USER_LOGIN,
            user_id=user.id, company_id=company_id, request=request,
        )
        tokens = await AuthService.issue_tokens(db, user, stamp_login=True)
        logger.info(f"User {user.id} logged in")
        return tokens

    @staticmethod
    async def refresh(db: AsyncSession, refresh_token: str) -> TokenResponse:
        payload = AuthService.verify_refresh_token(refresh_token)
        try:
            user_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            raise InvalidRefreshTokenError()

        user = await AuthService.get_active_user_row(db, user_id)
        if not user or not user.refresh_token_hash:
            raise InvalidRefreshTokenError()

        presented = AuthService.hash_refresh_token(refresh_token)
        if not hmac.compare_digest(presented, user.refresh_token_hash):
            logger.warning(f"Stale or revoked refresh token presented for user {user_id}")
            raise InvalidRefreshTokenError()

        if user.status != UserStatus.ACTIVE:
            raise AccountNotActiveError()

        return await AuthService.issue_tokens(db, user, expected_digest=presented)

    @staticmethod
    async def logout(db: AsyncSession, user_id: int, request: Optional[Request] = None) -> None:
        user = await AuthService.get_active_user_row(db, user_id)
        if not user:
            raise UserNotFoundError()
        user.refresh_token_hash = None
        db.add(user)
        record_audit(db, AuditEventType.USER_LOGOUT, user_id=user_id, request=request)
        await db.commit()
        logger.info(f"User {user_id} logged out")

    @staticmethod
    async def validate_bearer(db: AsyncSession, token: str) -> CurrentUser:
        """Decode an access token and rebuild the session context from the store.

        Token claims are only a hint: admin flag, company link and roles are
        re-read so deactivation and role changes apply on the next request.
        """
        payload = AuthService.verify_access_token(token)
        try:
            user_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            raise UnauthorizedError("Invalid token")

        user = await AuthService.get_active_user_row(db, user_id)
        if not user:
            raise UserNotFoundError()
        if user.status != UserStatus.ACTIVE:
            raise AccountNotActiveError()

        company_id, roles = await AuthService.load_session_snapshot(db, user.id)
        return CurrentUser(
            id=user.id,
            email=user.email,
            full_name=user.full_name or "",
            is_admin=bool(user.is_admin),
            company_id=company_id,
            scope=AuthService._scope_for(company_id),
            roles=roles,
            acl_version=ACL_VERSION,
        )


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    token = credentials.credentials if credentials else request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise UnauthorizedError()
    return await AuthService.validate_bearer(db, token)
