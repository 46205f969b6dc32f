# tests/test_spaces.py — Staff space management endpoints
import pytest
from httpx import AsyncClient
from sqlalchemy import delete

from models import OrganisationMember, SpaceStatus
from tests.conftest import get_auth_headers, make_block, make_page, make_response, make_space, task_content


@pytest.mark.asyncio
class TestSpaceCrud:
    async def test_create_starts_as_draft(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/spaces", headers=get_auth_headers(test_user), json={
            "name": "Globex rollout",
            "client_name": "Globex",
            "target_go_live_date": "2024-06-01",
        })
        assert res.status_code == 201
        body = res.json()
        assert body["status"] == "draft"
        assert body["progress_percentage"] == 0
        assert body["target_go_live_date"] == "2024-06-01"

    async def test_list_with_progress_and_filter(self, client: AsyncClient, db_session, test_org, test_space, test_user):
        await make_space(db_session, test_org, name="Drafty", status=SpaceStatus.DRAFT)
        page = await make_page(db_session, test_space)
        block = await make_block(db_session, page, "task", task_content(("t1", "A", None), ("t2", "B", None)))
        await make_response(db_session, block, {"tasks": {"t1": "completed"}})
        headers = get_auth_headers(test_user)

        res = await client.get("/api/v1/spaces", headers=headers)
        assert {s["name"]: s["progress_percentage"] for s in res.json()} == {"Acme Onboarding": 50, "Drafty": 0}

        res = await client.get("/api/v1/spaces?status=draft", headers=headers)
        assert [s["name"] for s in res.json()] == ["Drafty"]

    async def test_other_org_cannot_read(self, client: AsyncClient, test_space, outsider):
        res = await client.get(f"/api/v1/spaces/{test_space.id}", headers=get_auth_headers(outsider))
        assert res.status_code == 403

    async def test_delete_requires_archived(self, client: AsyncClient, db_session, test_space, admin_user):
        headers = get_auth_headers(admin_user)
        res = await client.delete(f"/api/v1/spaces/{test_space.id}", headers=headers)
        assert res.status_code == 400

        test_space.status = SpaceStatus.ARCHIVED
        await db_session.commit()
        res = await client.delete(f"/api/v1/spaces/{test_space.id}", headers=headers)
        assert res.status_code == 200
        res = await client.get(f"/api/v1/spaces/{test_space.id}", headers=headers)
        assert res.status_code == 404


@pytest.mark.asyncio
class TestStatus:
    async def test_status_lifecycle(self, client: AsyncClient, test_space, test_user):
        headers = get_auth_headers(test_user)
        url = f"/api/v1/spaces/{test_space.id}/status"

        res = await client.patch(url, headers=headers, json={"status": "completed"})
        assert res.status_code == 200
        assert res.json() == {"success": True, "status": "completed"}

        res = await client.patch(url, headers=headers, json={"status": "draft"})
        assert res.status_code == 400
        assert res.json()["detail"] == "Cannot change status from completed to draft"

        activity = await client.get(f"/api/v1/spaces/{test_space.id}/activity", headers=headers)
        assert activity.json()[0]["metadata"] == {"from": "active", "to": "completed"}

    async def test_unknown_status_rejected(self, client: AsyncClient, test_space, test_user):
        res = await client.patch(
            f"/api/v1/spaces/{test_space.id}/status",
            headers=get_auth_headers(test_user), json={"status": "paused"},
        )
        assert res.status_code == 422


@pytest.mark.asyncio
class TestProgressEndpoints:
    async def test_progress_and_task_lists(self, client: AsyncClient, db_session, test_space, test_user):
        page = await make_page(db_session, test_space, "Kickoff")
        await make_block(db_session, page, "task", task_content(
            ("t1", "Ancient", "2000-01-01"), ("t2", "Future", "2999-01-01"), ("t3", "Undated", None),
        ))
        headers = get_auth_headers(test_user)

        progress = await client.get(f"/api/v1/spaces/{test_space.id}/progress", headers=headers)
        assert progress.json()["total_tasks"] == 3

        pages = await client.get(f"/api/v1/spaces/{test_space.id}/progress/pages", headers=headers)
        assert pages.json()[0]["slug"] == "kickoff"

        overdue = await client.get(f"/api/v1/spaces/{test_space.id}/tasks/overdue", headers=headers)
        assert [t["title"] for t in overdue.json()] == ["Ancient"]

        upcoming = await client.get(f"/api/v1/spaces/{test_space.id}/tasks/upcoming?limit=1", headers=headers)
        assert [t["title"] for t in upcoming.json()] == ["Ancient"]

        board = await client.get("/api/v1/spaces/tasks", headers=headers)
        assert [t["title"] for t in board.json()["overdue"]] == ["Ancient"]
        assert [t["title"] for t in board.json()["upcoming"]] == ["Future"]
        assert [t["title"] for t in board.json()["no_due_date"]] == ["Undated"]


@pytest.mark.asyncio
class TestStakeholders:
    async def test_invite_list_and_duplicate(self, client: AsyncClient, test_space, test_user):
        headers = get_auth_headers(test_user)
        url = f"/api/v1/spaces/{test_space.id}/stakeholders"

        res = await client.post(url, headers=headers, json={"email": "CFO@Customer.com"})
        assert res.status_code == 201
        assert res.json()["email"] == "cfo@customer.com"
        assert res.json()["joined_at"] is None

        res = await client.post(url, headers=headers, json={"email": "cfo@customer.com"})
        assert res.status_code == 409

        res = await client.get(url, headers=headers)
        assert [m["email"] for m in res.json()] == ["cfo@customer.com"]

        activity = await client.get(f"/api/v1/spaces/{test_space.id}/activity?action=stakeholder.invited", headers=headers)
        assert len(activity.json()) == 1


@pytest.mark.asyncio
class TestOrganisationMembership:
    async def test_removed_member_loses_org_wide_routes(self, client: AsyncClient, db_session, test_space, test_user):
        headers = get_auth_headers(test_user)
        assert (await client.get("/api/v1/spaces", headers=headers)).status_code == 200

        await db_session.execute(delete(OrganisationMember).where(OrganisationMember.user_id == test_user.id))
        await db_session.commit()

        assert (await client.get(f"/api/v1/spaces/{test_space.id}", headers=headers)).status_code == 403
        assert (await client.get("/api/v1/spaces", headers=headers)).status_code == 403
        assert (await client.get("/api/v1/spaces/tasks", headers=headers)).status_code == 403
        res = await client.post("/api/v1/spaces", headers=headers, json={"name": "Sneaky"})
        assert res.status_code == 403
        for path in ("", "/space-stats", "/dashboard"):
            res = await client.get(f"/api/v1/insights{path}", headers=headers)
            assert res.status_code == 403
            assert res.json()["detail"] == "You are not a member of this organisation"
