# tests/test_roles.py — Role definitions and the permission catalog
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from authorization import COMPANY_USER, DEFAULT_ROLE_PERMISSIONS, PERMISSION_CATALOG
from models import Permission, Role, RolePermission
from role_service import ensure_default_roles
from tests.conftest import get_auth_headers, grant


async def _permission_ids(db_session, *names):
    rows = (await db_session.execute(
        select(Permission.name, Permission.id).where(Permission.name.in_(names))
    )).all()
    by_name = dict((r.name, r.id) for r in rows)
    return [by_name[n] for n in names]


@pytest.mark.asyncio
async def test_default_roles_are_idempotent(db_session):
    await ensure_default_roles(db_session)
    await ensure_default_roles(db_session)

    permission_count = len((await db_session.execute(select(Permission.id))).all())
    assert permission_count == len(PERMISSION_CATALOG)

    role_id = (await db_session.execute(select(Role.id).where(Role.name == COMPANY_USER))).scalar_one()
    grants = (await db_session.execute(
        select(Permission.name)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(RolePermission.role_id == role_id)
    )).scalars().all()
    assert sorted(grants) == sorted(DEFAULT_ROLE_PERMISSIONS[COMPANY_USER])


@pytest.mark.asyncio
async def test_list_roles(client: AsyncClient, admin_user, default_roles):
    resp = await client.get("/api/v1/roles", headers=get_auth_headers(admin_user))
    assert resp.status_code == 200
    by_name = {r["name"]: r for r in resp.json()}
    assert set(by_name) == {"COMPANY_ADMIN", "COMPANY_USER"}
    assert sorted(p["name"] for p in by_name[COMPANY_USER]["permissions"]) == sorted(
        DEFAULT_ROLE_PERMISSIONS[COMPANY_USER]
    )


@pytest.mark.asyncio
async def test_create_update_delete_role(client: AsyncClient, db_session, admin_user, default_roles):
    headers = get_auth_headers(admin_user)
    read_id, create_id, delete_id = await _permission_ids(
        db_session, "projects:read", "projects:create", "projects:delete",
    )

    resp = await client.post("/api/v1/roles", json={
        "name": "PROJECT_MANAGER", "description": "Runs projects", "permission_ids": [read_id, create_id],
    }, headers=headers)
    assert resp.status_code == 201
    role = resp.json()
    assert role["created_by"] == admin_user.id
    assert [p["name"] for p in role["permissions"]] == ["projects:create", "projects:read"]

    resp = await client.patch(f"/api/v1/roles/{role['id']}", json={
        "permission_ids": [read_id, delete_id],
    }, headers=headers)
    assert resp.status_code == 200
    assert [p["name"] for p in resp.json()["permissions"]] == ["projects:delete", "projects:read"]
    assert resp.json()["description"] == "Runs projects"

    resp = await client.delete(f"/api/v1/roles/{role['id']}", headers=headers)
    assert resp.status_code == 200
    assert (await client.get(f"/api/v1/roles/{role['id']}", headers=headers)).status_code == 404


@pytest.mark.asyncio
async def test_create_role_duplicate_name(client: AsyncClient, admin_user, default_roles):
    resp = await client.post("/api/v1/roles", json={"name": COMPANY_USER}, headers=get_auth_headers(admin_user))
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_create_role_unknown_permission(client: AsyncClient, admin_user):
    resp = await client.post(
        "/api/v1/roles", json={"name": "GHOST", "permission_ids": [99999]}, headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 404
    assert resp.json()["missing_ids"] == [99999]


@pytest.mark.asyncio
async def test_roles_require_permission(client: AsyncClient, db_session, test_user):
    headers = get_auth_headers(test_user)
    assert (await client.get("/api/v1/roles", headers=headers)).status_code == 403
    await grant(db_session, test_user, "roles:manage")
    assert (await client.get("/api/v1/roles", headers=headers)).status_code == 200


@pytest.mark.asyncio
async def test_deleting_role_revokes_its_permissions(client: AsyncClient, db_session, admin_user, test_user):
    role = await grant(db_session, test_user, "users:manage")
    user_headers = get_auth_headers(test_user)
    assert (await client.get("/api/v1/users", headers=user_headers)).status_code == 200

    resp = await client.delete(f"/api/v1/roles/{role.id}", headers=get_auth_headers(admin_user))
    assert resp.status_code == 200
    assert (await client.get("/api/v1/users", headers=user_headers)).status_code == 403


# ============================================================
# PERMISSIONS
# ============================================================

@pytest.mark.asyncio
async def test_permission_crud(client: AsyncClient, admin_user):
    headers = get_auth_headers(admin_user)
    resp = await client.post("/api/v1/permissions", json={
        "name": "reports:export", "description": "Export reports",
    }, headers=headers)
    assert resp.status_code == 201
    permission_id = resp.json()["id"]

    resp = await client.patch(
        f"/api/v1/permissions/{permission_id}", json={"description": "Export CSV reports"}, headers=headers,
    )
    assert resp.json()["description"] == "Export CSV reports"

    resp = await client.post("/api/v1/permissions", json={"name": "reports:export"}, headers=headers)
    assert resp.status_code == 409

    assert (await client.delete(f"/api/v1/permissions/{permission_id}", headers=headers)).status_code == 200
    assert (await client.get(f"/api/v1/permissions/{permission_id}", headers=headers)).status_code == 404


@pytest.mark.asyncio
async def test_permission_name_format(client: AsyncClient, admin_user):
    resp = await client.post(
        "/api/v1/permissions", json={"name": "Not A Permission"}, headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_permission_in_use_cannot_be_deleted(client: AsyncClient, db_session, admin_user, default_roles):
    (permission_id,) = await _permission_ids(db_session, "projects:read")
    resp = await client.delete(f"/api/v1/permissions/{permission_id}", headers=get_auth_headers(admin_user))
    assert resp.status_code == 409
    assert resp.json()["roles"] == ["COMPANY_ADMIN", "COMPANY_USER"]
