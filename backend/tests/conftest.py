# tests/conftest.py — Shared test fixtures
import os
from typing import Iterable, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["JWT_REFRESH_SECRET_KEY"] = "test-refresh-key-for-unit-tests-only-min-32-chars"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ENVIRONMENT"] = "test"

from models import (
    Base, User, UserProfile, UserRole, UserStatus, Company, Role, Permission, RolePermission,
    Region, ProjectStatus, ProjectType, KanbanBoard, KanbanColumn, KanbanBoardMember,
)
from auth import AuthService, _login_attempts
from authorization import COMPANY_ADMIN, COMPANY_USER
from database import get_db_session, enable_sqlite_foreign_keys
from role_service import ensure_default_roles
from main import app

DEFAULT_PASSWORD = "TestPassword123!"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_login_attempts():
    _login_attempts.clear()
    yield
    _login_attempts.clear()


# ============================================================
# BUILDERS
# ============================================================

async def make_user(
    db: AsyncSession,
    email: str,
    company: Optional[Company] = None,
    roles: Iterable[Role] = (),
    is_admin: bool = False,
    status: UserStatus = UserStatus.ACTIVE,
    password: str = DEFAULT_PASSWORD,
    full_name: str = "",
) -> User:
    """User with a profile (linked to ``company`` when given) and role assignments"""
    user = User(
        email=email,
        password_hash=AuthService.hash_password(password),
        full_name=full_name or email.split("@")[0].title(),
        is_admin=is_admin,
        status=status,
    )
    db.add(user)
    await db.flush()
    db.add(UserProfile(user_id=user.id, company_id=company.id if company else None))
    for role in roles:
        db.add(UserRole(user_id=user.id, role_id=role.id))
    await db.commit()
    await db.refresh(user)
    return user


async def make_role(db: AsyncSession, name: str, permission_names: Iterable[str]) -> Role:
    """Custom role granting the named permissions (created if missing)"""
    role = Role(name=name)
    db.add(role)
    await db.flush()
    for permission_name in permission_names:
        permission = (await db.execute(
            select(Permission).where(Permission.name == permission_name)
        )).scalar_one_or_none()
        if permission is None:
            permission = Permission(name=permission_name)
            db.add(permission)
            await db.flush()
        db.add(RolePermission(role_id=role.id, permission_id=permission.id))
    await db.commit()
    await db.refresh(role)
    return role


async def grant(db: AsyncSession, user: User, *permission_names: str) -> Role:
    """Give ``user`` a fresh role holding exactly these permissions"""
    role = await make_role(db, f"role-{user.id}-{'-'.join(permission_names) or 'empty'}", permission_names)
    db.add(UserRole(user_id=user.id, role_id=role.id))
    await db.commit()
    return role


async def make_board(db: AsyncSession, name: str = "Sales", columns: Iterable[str] = (), members: Iterable[User] = ()) -> KanbanBoard:
    board = KanbanBoard(name=name, code=f"code-{name.lower().replace(' ', '-')}")
    db.add(board)
    await db.flush()
    for position, column_name in enumerate(columns):
        db.add(KanbanColumn(board_id=board.id, name=column_name, position=position))
    for member in members:
        db.add(KanbanBoardMember(board_id=board.id, user_id=member.id))
    await db.commit()
    await db.refresh(board)
    return board


# ============================================================
# FIXTURES
# ============================================================

@pytest_asyncio.fixture
async def default_roles(db_session):
    """Permission catalog plus COMPANY_ADMIN / COMPANY_USER"""
    return await ensure_default_roles(db_session)


@pytest_asyncio.fixture
async def test_company(db_session):
    company = Company(name="Acme Corp", inn="100200300400")
    db_session.add(company)
    await db_session.commit()
    await db_session.refresh(company)
    return company


@pytest_asyncio.fixture
async def other_company(db_session):
    company = Company(name="Globex", inn="500600700800")
    db_session.add(company)
    await db_session.commit()
    await db_session.refresh(company)
    return company


@pytest_asyncio.fixture
async def reference_data(db_session):
    """One region, status and project type"""
    region = Region(name="Almaty")
    new_status = ProjectStatus(name="New")
    done_status = ProjectStatus(name="Completed")
    project_type = ProjectType(name="Construction")
    db_session.add_all([region, new_status, done_status, project_type])
    await db_session.commit()
    return {
        "region": region,
        "status": new_status,
        "done_status": done_status,
        "type": project_type,
    }


@pytest_asyncio.fixture
async def admin_user(db_session):
    """System administrator without a company"""
    return await make_user(db_session, "admin@projectdesk.dev", is_admin=True, full_name="Admin User")


@pytest_asyncio.fixture
async def company_admin(db_session, test_company, default_roles):
    return await make_user(
        db_session, "manager@acme.dev", company=test_company,
        roles=[default_roles[COMPANY_ADMIN]], full_name="Company Manager",
    )


@pytest_asyncio.fixture
async def test_user(db_session, test_company, default_roles):
    """Regular member of test_company"""
    return await make_user(
        db_session, "testuser@acme.dev", company=test_company,
        roles=[default_roles[COMPANY_USER]], full_name="Test User",
    )


@pytest_asyncio.fixture
async def outsider(db_session, other_company, default_roles):
    """Company admin of a different company"""
    return await make_user(
        db_session, "outsider@globex.dev", company=other_company,
        roles=[default_roles[COMPANY_ADMIN]], full_name="Outside User",
    )


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": str(user.id),
        "email": user.email,
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}
