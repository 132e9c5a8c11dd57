# tests/test_reference.py — Regions, project statuses and project types
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import KanbanColumn
from tests.conftest import get_auth_headers, make_board


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/api/v1/regions", "/api/v1/project-statuses", "/api/v1/project-types"])
async def test_catalog_crud(client: AsyncClient, admin_user, path):
    headers = get_auth_headers(admin_user)
    resp = await client.post(path, json={"name": "Zeta"}, headers=headers)
    assert resp.status_code == 201
    item_id = resp.json()["id"]
    await client.post(path, json={"name": "Alpha"}, headers=headers)

    listed = await client.get(path, headers=headers)
    assert [i["name"] for i in listed.json()] == ["Alpha", "Zeta"]

    resp = await client.patch(f"{path}/{item_id}", json={"name": "Omega"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["name"] == "Omega"

    resp = await client.post(path, json={"name": "Alpha"}, headers=headers)
    assert resp.status_code == 409

    assert (await client.delete(f"{path}/{item_id}", headers=headers)).status_code == 200
    assert (await client.get(f"{path}/{item_id}", headers=headers)).status_code == 404


@pytest.mark.asyncio
async def test_regions_have_no_description(client: AsyncClient, admin_user):
    resp = await client.post(
        "/api/v1/regions", json={"name": "Almaty", "description": "ignored"}, headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 201
    assert resp.json()["description"] is None


@pytest.mark.asyncio
async def test_any_user_can_read(client: AsyncClient, test_user, reference_data):
    resp = await client.get("/api/v1/project-statuses", headers=get_auth_headers(test_user))
    assert resp.status_code == 200
    assert [s["name"] for s in resp.json()] == ["Completed", "New"]


@pytest.mark.asyncio
async def test_writes_require_permission(client: AsyncClient, test_user):
    resp = await client.post("/api/v1/regions", json={"name": "Nope"}, headers=get_auth_headers(test_user))
    assert resp.status_code == 403
    assert resp.json()["missing"] == ["reference-data:manage"]


@pytest.mark.asyncio
async def test_reads_require_authentication(client: AsyncClient):
    assert (await client.get("/api/v1/regions")).status_code == 401


@pytest.mark.asyncio
async def test_region_in_use_cannot_be_deleted(client: AsyncClient, db_session, admin_user, reference_data):
    board = await make_board(db_session, "Sales", columns=["Lead"])
    column_id = (await db_session.execute(
        select(KanbanColumn.id).where(KanbanColumn.board_id == board.id)
    )).scalar_one()
    headers = get_auth_headers(admin_user)
    await client.post("/api/v1/projects", json={
        "name": "Depot",
        "region_id": reference_data["region"].id,
        "status_id": reference_data["status"].id,
        "contact_name": "Dana",
        "kanban_column_id": column_id,
    }, headers=headers)

    resp = await client.delete(f"/api/v1/regions/{reference_data['region'].id}", headers=headers)
    assert resp.status_code == 409
    assert resp.json()["project_count"] == 1
