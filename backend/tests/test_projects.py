# tests/test_projects.py — Projects, change log, comments and notifications
from datetime import datetime, timezone, timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import select, func

from models import KanbanColumn, Notification, ProjectLog, ProjectComment
from project_service import log_value
from tests.conftest import get_auth_headers, make_board


@pytest_asyncio.fixture
async def columns(db_session):
    """Sales board with Lead / Won columns; returns their ids"""
    board = await make_board(db_session, "Sales", columns=["Lead", "Won"])
    ids = (await db_session.execute(
        select(KanbanColumn.id).where(KanbanColumn.board_id == board.id).order_by(KanbanColumn.position)
    )).scalars().all()
    return {"board_id": board.id, "lead": ids[0], "won": ids[1]}


def _payload(reference_data, columns, **overrides):
    payload = {
        "name": "Warehouse",
        "region_id": reference_data["region"].id,
        "status_id": reference_data["status"].id,
        "project_type_id": reference_data["type"].id,
        "contact_name": "Dana Smith",
        "contact_email": "dana@client.dev",
        "kanban_column_id": columns["lead"],
    }
    payload.update(overrides)
    return payload


async def _log_count(db_session, project_id):
    return (await db_session.execute(
        select(func.count(ProjectLog.id)).where(ProjectLog.project_id == project_id)
    )).scalar()


@pytest.mark.asyncio
async def test_create_project(client: AsyncClient, admin_user, reference_data, columns, test_user):
    resp = await client.post(
        "/api/v1/projects",
        json=_payload(reference_data, columns, executor_ids=[test_user.id], attached_files=["plan.pdf"]),
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["name"] == "Warehouse"
    assert data["created_by"] == admin_user.id
    assert data["kanban_column_id"] == columns["lead"]
    assert [e["id"] for e in data["executors"]] == [test_user.id]
    assert data["attached_files"] == ["plan.pdf"]


@pytest.mark.asyncio
async def test_create_notifies_executors(client: AsyncClient, db_session, admin_user, reference_data, columns, test_user):
    resp = await client.post(
        "/api/v1/projects",
        json=_payload(reference_data, columns, executor_ids=[test_user.id]),
        headers=get_auth_headers(admin_user),
    )
    project_id = resp.json()["id"]
    rows = (await db_session.execute(
        select(Notification.type, Notification.entity_id).where(Notification.user_id == test_user.id)
    )).all()
    assert [(r.type, r.entity_id) for r in rows] == [("project.assigned", project_id)]


@pytest.mark.asyncio
async def test_create_with_unknown_reference(client: AsyncClient, admin_user, reference_data, columns):
    resp = await client.post(
        "/api/v1/projects",
        json=_payload(reference_data, columns, region_id=99999),
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_create_with_unknown_executor(client: AsyncClient, admin_user, reference_data, columns):
    resp = await client.post(
        "/api/v1/projects",
        json=_payload(reference_data, columns, executor_ids=[99999]),
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 404
    assert resp.json()["missing_ids"] == [99999]


@pytest.mark.asyncio
async def test_create_requires_permission(client: AsyncClient, test_user, reference_data, columns):
    resp = await client.post(
        "/api/v1/projects", json=_payload(reference_data, columns), headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 403
    assert resp.json()["missing"] == ["projects:create"]


@pytest.mark.asyncio
async def test_update_logs_each_changed_field(client: AsyncClient, db_session, admin_user, reference_data, columns):
    headers = get_auth_headers(admin_user)
    project = (await client.post("/api/v1/projects", json=_payload(reference_data, columns), headers=headers)).json()
    assert await _log_count(db_session, project["id"]) == 0

    resp = await client.patch(
        f"/api/v1/projects/{project['id']}",
        json={"name": "Warehouse 2", "contact_name": "Dana Smith", "comments": "Phase one"},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["name"] == "Warehouse 2"
    # contact_name did not change
    assert await _log_count(db_session, project["id"]) == 2

    logs = (await client.get(f"/api/v1/projects/{project['id']}/logs", headers=headers)).json()
    by_field = {entry["field"]: entry for entry in logs}
    assert set(by_field) == {"name", "comments"}
    assert by_field["name"]["old_value"] == "Warehouse"
    assert by_field["name"]["new_value"] == "Warehouse 2"
    assert by_field["comments"]["old_value"] is None
    assert by_field["name"]["changed_by_name"] == "Admin User"


@pytest.mark.asyncio
async def test_noop_update_writes_no_log(client: AsyncClient, db_session, admin_user, reference_data, columns):
    headers = get_auth_headers(admin_user)
    project = (await client.post(
        "/api/v1/projects",
        json=_payload(reference_data, columns, expected_deadline="2026-03-01T00:00:00Z", attached_files=["a.pdf"]),
        headers=headers,
    )).json()

    resp = await client.patch(f"/api/v1/projects/{project['id']}", json={
        "name": "Warehouse",
        "expected_deadline": "2026-03-01T00:00:00+00:00",
        "attached_files": ["a.pdf"],
    }, headers=headers)
    assert resp.status_code == 200
    assert await _log_count(db_session, project["id"]) == 0


@pytest.mark.asyncio
async def test_update_rejects_null_required_field(client: AsyncClient, admin_user, reference_data, columns):
    headers = get_auth_headers(admin_user)
    project = (await client.post("/api/v1/projects", json=_payload(reference_data, columns), headers=headers)).json()
    resp = await client.patch(f"/api/v1/projects/{project['id']}", json={"region_id": None}, headers=headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_update_executors_notifies_new_ones_only(
    client: AsyncClient, db_session, admin_user, reference_data, columns, test_user, company_admin,
):
    headers = get_auth_headers(admin_user)
    project = (await client.post(
        "/api/v1/projects", json=_payload(reference_data, columns, executor_ids=[test_user.id]), headers=headers,
    )).json()

    resp = await client.patch(
        f"/api/v1/projects/{project['id']}",
        json={"executor_ids": [test_user.id, company_admin.id]},
        headers=headers,
    )
    assert sorted(e["id"] for e in resp.json()["executors"]) == sorted([test_user.id, company_admin.id])

    counts = dict((await db_session.execute(
        select(Notification.user_id, func.count(Notification.id)).group_by(Notification.user_id)
    )).all())
    assert counts == {test_user.id: 1, company_admin.id: 1}


@pytest.mark.asyncio
async def test_status_change_writes_one_log(client: AsyncClient, db_session, admin_user, reference_data, columns):
    headers = get_auth_headers(admin_user)
    project = (await client.post("/api/v1/projects", json=_payload(reference_data, columns), headers=headers)).json()

    resp = await client.patch(
        f"/api/v1/projects/{project['id']}/status",
        json={"status_id": reference_data["done_status"].id},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["status_id"] == reference_data["done_status"].id

    rows = (await db_session.execute(
        select(ProjectLog.field, ProjectLog.old_value, ProjectLog.new_value)
        .where(ProjectLog.project_id == project["id"])
    )).all()
    assert [tuple(r) for r in rows] == [
        ("status_id", str(reference_data["status"].id), str(reference_data["done_status"].id)),
    ]


@pytest.mark.asyncio
async def test_status_change_unknown_status(client: AsyncClient, admin_user, reference_data, columns):
    headers = get_auth_headers(admin_user)
    project = (await client.post("/api/v1/projects", json=_payload(reference_data, columns), headers=headers)).json()
    resp = await client.patch(f"/api/v1/projects/{project['id']}/status", json={"status_id": 99999}, headers=headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_move_to_kanban_column(client: AsyncClient, db_session, admin_user, reference_data, columns):
    headers = get_auth_headers(admin_user)
    project = (await client.post("/api/v1/projects", json=_payload(reference_data, columns), headers=headers)).json()

    resp = await client.patch(
        f"/api/v1/projects/{project['id']}/kanban-column",
        json={"kanban_column_id": columns["won"]},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["kanban_column_id"] == columns["won"]
    assert await _log_count(db_session, project["id"]) == 1

    resp = await client.patch(
        f"/api/v1/projects/{project['id']}/kanban-column", json={"kanban_column_id": 99999}, headers=headers,
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_transitions_to_current_value_still_log(client: AsyncClient, db_session, admin_user, reference_data, columns):
    headers = get_auth_headers(admin_user)
    project = (await client.post("/api/v1/projects", json=_payload(reference_data, columns), headers=headers)).json()

    resp = await client.patch(
        f"/api/v1/projects/{project['id']}/status",
        json={"status_id": reference_data["status"].id},
        headers=headers,
    )
    assert resp.status_code == 200
    resp = await client.patch(
        f"/api/v1/projects/{project['id']}/kanban-column",
        json={"kanban_column_id": columns["lead"]},
        headers=headers,
    )
    assert resp.status_code == 200

    rows = (await db_session.execute(
        select(ProjectLog.field, ProjectLog.old_value, ProjectLog.new_value)
        .where(ProjectLog.project_id == project["id"])
        .order_by(ProjectLog.id)
    )).all()
    assert [tuple(r) for r in rows] == [
        ("status_id", str(reference_data["status"].id), str(reference_data["status"].id)),
        ("kanban_column_id", str(columns["lead"]), str(columns["lead"])),
    ]

    # The generic update path stays silent for the same values
    resp = await client.patch(
        f"/api/v1/projects/{project['id']}",
        json={"status_id": reference_data["status"].id, "kanban_column_id": columns["lead"]},
        headers=headers,
    )
    assert resp.status_code == 200
    assert await _log_count(db_session, project["id"]) == 2


@pytest.mark.asyncio
async def test_delete_project_cascades(client: AsyncClient, db_session, admin_user, reference_data, columns):
    headers = get_auth_headers(admin_user)
    project = (await client.post("/api/v1/projects", json=_payload(reference_data, columns), headers=headers)).json()
    await client.patch(f"/api/v1/projects/{project['id']}", json={"name": "Renamed"}, headers=headers)
    await client.post(f"/api/v1/projects/{project['id']}/comments", json={"message": "hi"}, headers=headers)

    resp = await client.delete(f"/api/v1/projects/{project['id']}", headers=headers)
    assert resp.status_code == 200
    assert (await client.get(f"/api/v1/projects/{project['id']}", headers=headers)).status_code == 404
    assert await _log_count(db_session, project["id"]) == 0
    comments = (await db_session.execute(
        select(func.count(ProjectComment.id)).where(ProjectComment.project_id == project["id"])
    )).scalar()
    assert comments == 0

    resp = await client.delete(f"/api/v1/projects/{project['id']}", headers=headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_comments(client: AsyncClient, admin_user, test_user, reference_data, columns):
    project = (await client.post(
        "/api/v1/projects", json=_payload(reference_data, columns), headers=get_auth_headers(admin_user),
    )).json()
    headers = get_auth_headers(test_user)

    resp = await client.post(
        f"/api/v1/projects/{project['id']}/comments", json={"message": "Site visit on Monday"}, headers=headers,
    )
    assert resp.status_code == 201
    assert resp.json()["author_name"] == "Test User"

    resp = await client.get(f"/api/v1/projects/{project['id']}/comments", headers=headers)
    assert resp.status_code == 200
    assert [c["message"] for c in resp.json()] == ["Site visit on Monday"]

    resp = await client.post("/api/v1/projects/99999/comments", json={"message": "?"}, headers=headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_check_name(client: AsyncClient, admin_user, reference_data, columns):
    headers = get_auth_headers(admin_user)
    await client.post("/api/v1/projects", json=_payload(reference_data, columns), headers=headers)

    taken = await client.get("/api/v1/projects/check-name", params={"name": "Warehouse"}, headers=headers)
    free = await client.get("/api/v1/projects/check-name", params={"name": "Office"}, headers=headers)
    assert taken.json() == {"name": "Warehouse", "available": False}
    assert free.json() == {"name": "Office", "available": True}


@pytest.mark.asyncio
async def test_list_filters(client: AsyncClient, admin_user, reference_data, columns, test_user):
    headers = get_auth_headers(admin_user)
    await client.post("/api/v1/projects", json=_payload(
        reference_data, columns, name="Alpha", executor_ids=[test_user.id],
    ), headers=headers)
    await client.post("/api/v1/projects", json=_payload(
        reference_data, columns, name="Beta", kanban_column_id=columns["won"],
    ), headers=headers)

    by_executor = await client.get("/api/v1/projects", params={"executor_id": test_user.id}, headers=headers)
    assert [p["name"] for p in by_executor.json()] == ["Alpha"]

    by_column = await client.get("/api/v1/projects", params={"kanban_column_id": columns["won"]}, headers=headers)
    assert [p["name"] for p in by_column.json()] == ["Beta"]

    by_board = await client.get("/api/v1/projects", params={"board_id": columns["board_id"]}, headers=headers)
    assert sorted(p["name"] for p in by_board.json()) == ["Alpha", "Beta"]


@pytest.mark.asyncio
async def test_company_admin_creates_company_project(
    client: AsyncClient, company_admin, test_company, reference_data, columns,
):
    headers = get_auth_headers(company_admin)
    resp = await client.post(
        f"/api/v1/companies/{test_company.id}/projects",
        json=_payload(reference_data, columns),
        headers=headers,
    )
    assert resp.status_code == 201
    assert resp.json()["company_id"] == test_company.id

    resp = await client.get(f"/api/v1/companies/{test_company.id}/projects", headers=headers)
    assert [p["name"] for p in resp.json()] == ["Warehouse"]


def test_log_value_forms():
    assert log_value(None) is None
    assert log_value(5) == "5"
    assert log_value(["a", "b"]) == '["a", "b"]'
    shifted = datetime(2026, 3, 1, 5, 0, tzinfo=timezone(timedelta(hours=5)))
    assert log_value(shifted) == "2026-03-01T00:00:00+00:00"
    assert log_value(datetime(2026, 3, 1)) == "2026-03-01T00:00:00+00:00"
