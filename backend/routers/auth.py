# routers/auth.py — Login, refresh rotation, logout and session introspection
import os
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserLogin, TokenResponse, RefreshRequest, CurrentUser,
    get_current_user, validate_password_strength,
    ACCESS_COOKIE, REFRESH_COOKIE, ACCESS_TOKEN_EXPIRE_MINUTES, REFRESH_TOKEN_EXPIRE_DAYS,
)
from authorization import load_user_permissions
from company_service import CompanyService
from database import get_db_session
from errors import InvalidRefreshTokenError

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


class InvitationRegister(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    password: str
    full_name: str = Field(..., min_length=1, max_length=255)
    phone: Optional[str] = None

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


def _set_auth_cookies(response: Response, tokens: TokenResponse) -> None:
    secure = os.getenv("ENVIRONMENT", "development") == "production"
    response.set_cookie(
        ACCESS_COOKIE, tokens.access_token,
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        httponly=True, secure=secure, samesite="lax",
    )
    response.set_cookie(
        REFRESH_COOKIE, tokens.refresh_token,
        max_age=REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        httponly=True, secure=secure, samesite="lax",
    )


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    tokens = await AuthService.login(db, credentials.email, credentials.password, request)
    _set_auth_cookies(response, tokens)
    return tokens


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    request: Request,
    response: Response,
    refresh_req: Optional[RefreshRequest] = None,
    db: AsyncSession = Depends(get_db_session),
):
    """Rotate the refresh token; the body wins over the cookie"""
    token = (refresh_req.refresh_token if refresh_req else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise InvalidRefreshTokenError()
    tokens = await AuthService.refresh(db, token)
    _set_auth_cookies(response, tokens)
    return tokens


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Forget the stored refresh token and clear auth cookies"""
    await AuthService.logout(db, user.id, request)
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)
    return {"status": "logged_out", "message": "Session terminated"}


@router.get("/me", response_model=CurrentUser)
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    """Get current authenticated user information"""
    return user


@router.get("/permissions")
async def get_my_permissions(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Effective permission snapshot for the caller"""
    return {
        "user_id": user.id,
        "company_id": user.company_id,
        "scope": user.scope,
        "is_admin": user.is_admin,
        "roles": user.roles,
        "permissions": sorted(await load_user_permissions(db, user.id)),
        "acl_version": user.acl_version,
    }


@router.post("/register-by-invitation", response_model=TokenResponse, status_code=201)
async def register_by_invitation(
    data: InvitationRegister,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
):
    """Accept an invitation code and sign the new user in"""
    user = await CompanyService.accept_invitation(
        db, data.code, data.password, data.full_name, data.phone,
    )
    tokens = await AuthService.issue_tokens(db, user, stamp_login=True)
    _set_auth_cookies(response, tokens)
    return tokens
