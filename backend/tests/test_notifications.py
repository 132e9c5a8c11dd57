"""Tests for the Notifications router."""
import pytest
import pytest_asyncio
from sqlalchemy import select

from errors import ConflictError
from kanban_service import KanbanBoardService
from models import Notification, NotificationSettings
from notification_service import NotificationService, PROJECT_ASSIGNED, KANBAN_MEMBER_ADDED, TYPE_TOGGLES
from tests.conftest import get_auth_headers, make_board


@pytest_asyncio.fixture
async def inbox(db_session, test_user, company_admin):
    """Two notifications for test_user, one for company_admin"""
    await NotificationService.queue(db_session, test_user.id, PROJECT_ASSIGNED, title="Assigned to Depot", entity_type="project", entity_id=1)
    await NotificationService.queue(db_session, test_user.id, KANBAN_MEMBER_ADDED, title="Added to Sales", entity_type="kanban_board", entity_id=1)
    await NotificationService.queue(db_session, company_admin.id, PROJECT_ASSIGNED, title="Assigned to Depot")
    await db_session.commit()
    rows = (await db_session.execute(
        select(Notification.id).where(Notification.user_id == test_user.id).order_by(Notification.id)
    )).scalars().all()
    return list(rows)


@pytest.mark.asyncio
async def test_list_notifications_empty(client, test_user):
    headers = get_auth_headers(test_user)
    resp = await client.get("/api/v1/notifications", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == []


@pytest.mark.asyncio
async def test_list_only_own(client, test_user, inbox):
    resp = await client.get("/api/v1/notifications", headers=get_auth_headers(test_user))
    assert resp.status_code == 200
    assert sorted(n["id"] for n in resp.json()) == inbox


@pytest.mark.asyncio
async def test_filter_by_type(client, test_user, inbox):
    resp = await client.get(
        "/api/v1/notifications", params={"type": KANBAN_MEMBER_ADDED}, headers=get_auth_headers(test_user),
    )
    assert [n["title"] for n in resp.json()] == ["Added to Sales"]


@pytest.mark.asyncio
async def test_unread_count_and_mark_read(client, test_user, inbox):
    headers = get_auth_headers(test_user)
    assert (await client.get("/api/v1/notifications/unread-count", headers=headers)).json() == {"unread": 2}

    resp = await client.post(f"/api/v1/notifications/{inbox[0]}/read", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["is_read"] is True
    assert resp.json()["read_at"] is not None

    assert (await client.get("/api/v1/notifications/unread-count", headers=headers)).json() == {"unread": 1}

    unread = await client.get("/api/v1/notifications", params={"is_read": False}, headers=headers)
    assert [n["id"] for n in unread.json()] == [inbox[1]]


@pytest.mark.asyncio
async def test_mark_all_read(client, test_user, company_admin, inbox):
    resp = await client.post("/api/v1/notifications/read-all", headers=get_auth_headers(test_user))
    assert resp.json() == {"marked": 2}
    # Other users are untouched
    other = await client.get("/api/v1/notifications/unread-count", headers=get_auth_headers(company_admin))
    assert other.json() == {"unread": 1}


@pytest.mark.asyncio
async def test_cannot_read_someone_elses(client, company_admin, inbox):
    headers = get_auth_headers(company_admin)
    assert (await client.get(f"/api/v1/notifications/{inbox[0]}", headers=headers)).status_code == 404
    assert (await client.post(f"/api/v1/notifications/{inbox[0]}/read", headers=headers)).status_code == 404


@pytest.mark.asyncio
async def test_delete_hides_notification(client, test_user, inbox):
    headers = get_auth_headers(test_user)
    resp = await client.delete(f"/api/v1/notifications/{inbox[0]}", headers=headers)
    assert resp.status_code == 200
    assert (await client.get(f"/api/v1/notifications/{inbox[0]}", headers=headers)).status_code == 404
    assert (await client.get("/api/v1/notifications/unread-count", headers=headers)).json() == {"unread": 1}


@pytest.mark.asyncio
async def test_clear_all_hides_only_own(client, test_user, company_admin, inbox):
    resp = await client.delete("/api/v1/notifications/clear-all", headers=get_auth_headers(test_user))
    assert resp.status_code == 200
    assert resp.json() == {"cleared": 2}
    assert (await client.get("/api/v1/notifications", headers=get_auth_headers(test_user))).json() == []
    other = await client.get("/api/v1/notifications", headers=get_auth_headers(company_admin))
    assert len(other.json()) == 1


# ============================================================
# SETTINGS
# ============================================================

@pytest.mark.asyncio
async def test_settings_defaults_created_on_first_read(client, db_session, test_user):
    resp = await client.get("/api/v1/notifications/settings", headers=get_auth_headers(test_user))
    assert resp.status_code == 200
    data = resp.json()
    assert data["sound_enabled"] is True
    assert data["sound_volume"] == 50
    assert all(data[toggle] is True for toggle in TYPE_TOGGLES.values())

    rows = (await db_session.execute(
        select(NotificationSettings.id).where(NotificationSettings.user_id == test_user.id)
    )).all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_update_settings_is_partial(client, test_user):
    headers = get_auth_headers(test_user)
    resp = await client.patch(
        "/api/v1/notifications/settings", json={"sound_volume": 80, "project_assigned": False}, headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["sound_volume"] == 80
    assert resp.json()["project_assigned"] is False
    assert resp.json()["sound_enabled"] is True

    again = await client.get("/api/v1/notifications/settings", headers=headers)
    assert again.json()["sound_volume"] == 80


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{"sound_volume": 101}, {"sound_volume": -1}, {"sound_enabled": None}])
async def test_update_settings_validation(client, test_user, body):
    resp = await client.patch("/api/v1/notifications/settings", json=body, headers=get_auth_headers(test_user))
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_muted_type_is_not_recorded(db_session, test_user):
    await NotificationService.update_settings(db_session, test_user.id, {"project_assigned": False})

    skipped = await NotificationService.queue(db_session, test_user.id, PROJECT_ASSIGNED, title="Assigned to Depot")
    kept = await NotificationService.queue(db_session, test_user.id, KANBAN_MEMBER_ADDED, title="Added to Sales")
    await db_session.commit()

    assert skipped is None
    assert kept is not None
    types = (await db_session.execute(
        select(Notification.type).where(Notification.user_id == test_user.id)
    )).scalars().all()
    assert types == [KANBAN_MEMBER_ADDED]


@pytest.mark.asyncio
async def test_muted_board_invite_still_adds_member(db_session, test_user):
    await NotificationService.update_settings(db_session, test_user.id, {"kanban_member_added": False})
    board = await make_board(db_session, "Sales")

    member = await KanbanBoardService.add_member(db_session, board.id, test_user.id)
    assert member.user_id == test_user.id
    with pytest.raises(ConflictError):
        await KanbanBoardService.add_member(db_session, board.id, test_user.id)

    rows = (await db_session.execute(
        select(Notification.id).where(Notification.user_id == test_user.id)
    )).all()
    assert rows == []
