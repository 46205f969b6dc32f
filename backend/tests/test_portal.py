# tests/test_portal.py — Customer portal HTTP flows
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import PortalAccessToken, SpaceStatus
from portal_auth import cookie_name
from task_keys import external_task_id
from tests.conftest import (
    form_content, get_auth_headers, make_block, make_file, make_page, make_space, portal_cookies,
    task_content,
)

CLIENT = "client@customer.com"


@pytest.mark.asyncio
class TestMagicLink:
    async def test_request_and_redeem(self, client: AsyncClient, db_session, test_space, stakeholder):
        res = await client.post(f"/api/v1/portal/{test_space.id}/access-request", json={"email": "Client@Customer.com"})
        assert res.status_code == 202
        assert res.json() == {"status": "sent"}

        token = (await db_session.execute(
            select(PortalAccessToken.token).where(PortalAccessToken.space_id == test_space.id)
        )).scalar_one()

        res = await client.post(f"/api/v1/portal/{test_space.id}/session", json={"token": token})
        assert res.status_code == 200
        assert res.json() == {"email": CLIENT, "space_id": test_space.id}
        assert cookie_name(test_space.id) in res.cookies

        res = await client.get(
            f"/api/v1/portal/{test_space.id}",
            cookies={cookie_name(test_space.id): res.cookies[cookie_name(test_space.id)]},
        )
        assert res.status_code == 200
        assert res.json()["viewer"] == {"email": CLIENT, "stakeholder": True}

    async def test_token_is_single_use(self, client: AsyncClient, db_session, test_space, stakeholder):
        await client.post(f"/api/v1/portal/{test_space.id}/access-request", json={"email": CLIENT})
        token = (await db_session.execute(select(PortalAccessToken.token))).scalar_one()

        first = await client.post(f"/api/v1/portal/{test_space.id}/session", json={"token": token})
        second = await client.post(f"/api/v1/portal/{test_space.id}/session", json={"token": token})
        assert first.status_code == 200
        assert second.status_code == 401
        assert second.json()["detail"] == "This access link is invalid or has expired"

    async def test_uninvited_email_gets_same_answer(self, client: AsyncClient, db_session, test_space, stakeholder):
        res = await client.post(f"/api/v1/portal/{test_space.id}/access-request", json={"email": "stranger@else.com"})
        assert res.status_code == 202
        assert res.json() == {"status": "sent"}
        assert (await db_session.execute(select(PortalAccessToken))).first() is None

    async def test_draft_space_refuses_session(self, client: AsyncClient, db_session, test_space, stakeholder):
        await client.post(f"/api/v1/portal/{test_space.id}/access-request", json={"email": CLIENT})
        token = (await db_session.execute(select(PortalAccessToken.token))).scalar_one()
        test_space.status = SpaceStatus.DRAFT
        await db_session.commit()

        res = await client.post(f"/api/v1/portal/{test_space.id}/session", json={"token": token})
        assert res.status_code == 403


@pytest.mark.asyncio
class TestPortalReads:
    async def test_requires_identity(self, client: AsyncClient, test_space):
        res = await client.get(f"/api/v1/portal/{test_space.id}")
        assert res.status_code == 401

    async def test_revoked_stakeholder_locked_out(self, client: AsyncClient, admin_user, test_space, stakeholder):
        cookies = portal_cookies(test_space.id, CLIENT)
        assert (await client.get(f"/api/v1/portal/{test_space.id}", cookies=cookies)).status_code == 200

        res = await client.delete(
            f"/api/v1/spaces/{test_space.id}/stakeholders/{stakeholder.id}",
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 200

        res = await client.get(f"/api/v1/portal/{test_space.id}", cookies=cookies)
        assert res.status_code == 403

    @pytest.mark.parametrize("status,code", [(SpaceStatus.DRAFT, 403), (SpaceStatus.ARCHIVED, 403)])
    async def test_stakeholder_blocked_by_lifecycle(self, client: AsyncClient, db_session, test_space, stakeholder, status, code):
        test_space.status = status
        await db_session.commit()
        res = await client.get(f"/api/v1/portal/{test_space.id}", cookies=portal_cookies(test_space.id, CLIENT))
        assert res.status_code == code

    async def test_staff_preview_of_draft(self, client: AsyncClient, db_session, test_org, test_user):
        draft = await make_space(db_session, test_org, status=SpaceStatus.DRAFT)
        res = await client.get(f"/api/v1/portal/{draft.id}", headers=get_auth_headers(test_user))
        assert res.status_code == 200
        assert res.json()["viewer"]["stakeholder"] is False

    async def test_accessibility(self, client: AsyncClient, db_session, test_space, stakeholder):
        test_space.status = SpaceStatus.COMPLETED
        await db_session.commit()
        res = await client.get(
            f"/api/v1/portal/{test_space.id}/accessibility", cookies=portal_cookies(test_space.id, CLIENT),
        )
        assert res.json() == {"allowed": True, "read_only": True, "reason": None}

    async def test_hidden_pages_only_for_staff(self, client: AsyncClient, db_session, test_space, stakeholder, test_user):
        await make_page(db_session, test_space, "Welcome", sort_order=0)
        await make_page(db_session, test_space, "Internal notes", sort_order=1, is_visible=False)

        as_client = await client.get(f"/api/v1/portal/{test_space.id}/pages", cookies=portal_cookies(test_space.id, CLIENT))
        as_staff = await client.get(f"/api/v1/portal/{test_space.id}/pages", headers=get_auth_headers(test_user))
        assert [p["slug"] for p in as_client.json()] == ["welcome"]
        assert [p["slug"] for p in as_staff.json()] == ["welcome", "internal-notes"]
        assert as_client.json()[0]["progress_percentage"] == 100

        hidden = await client.get(
            f"/api/v1/portal/{test_space.id}/pages/internal-notes", cookies=portal_cookies(test_space.id, CLIENT),
        )
        assert hidden.status_code == 404

    async def test_page_blocks_carry_completion(self, client: AsyncClient, db_session, test_space, stakeholder):
        page = await make_page(db_session, test_space, "Setup")
        await make_block(db_session, page, "text", {"html": "hi"})
        checklist = await make_block(db_session, page, "checklist", {"items": ["a", "b"]}, sort_order=1)
        upload = await make_block(db_session, page, "file_upload", {}, sort_order=2)
        await make_file(db_session, upload, test_space)
        cookies = portal_cookies(test_space.id, CLIENT)

        await client.put(
            f"/api/v1/portal/{test_space.id}/blocks/{checklist.id}/response",
            json={"value": {"checked_items": ["a"]}}, cookies=cookies,
        )
        res = await client.get(f"/api/v1/portal/{test_space.id}/pages/setup", cookies=cookies)
        assert res.status_code == 200
        blocks = res.json()["blocks"]
        assert [b["completion"] for b in blocks] == [None, 0.5, 1.0]
        assert blocks[2]["files"][0]["name"] == "contract.pdf"


@pytest.mark.asyncio
class TestPortalMutations:
    async def test_toggle_with_cookie(self, client: AsyncClient, db_session, test_space, stakeholder):
        page = await make_page(db_session, test_space)
        block = await make_block(db_session, page, "task", task_content(("t1", "Sign", None), ("t2", "Pay", None)))
        cookies = portal_cookies(test_space.id, CLIENT)

        res = await client.post(
            f"/api/v1/portal/{test_space.id}/tasks/{external_task_id(block.id, 't1')}/toggle", cookies=cookies,
        )
        assert res.status_code == 200
        assert res.json()["status"] == "completed"

        progress = await client.get(f"/api/v1/portal/{test_space.id}/progress", cookies=cookies)
        assert progress.json()["progress_percentage"] == 50

    async def test_read_only_returns_403(self, client: AsyncClient, db_session, test_space, stakeholder):
        page = await make_page(db_session, test_space)
        block = await make_block(db_session, page, "form", form_content("q1"))
        test_space.status = SpaceStatus.COMPLETED
        await db_session.commit()

        res = await client.put(
            f"/api/v1/portal/{test_space.id}/blocks/{block.id}/response",
            json={"value": {"questions": {"q1": {"text": "late answer"}}}},
            cookies=portal_cookies(test_space.id, CLIENT),
        )
        assert res.status_code == 403
        assert res.json()["detail"] == "This project is finished and read-only."

    async def test_bad_task_id_is_400(self, client: AsyncClient, test_space, stakeholder):
        res = await client.post(
            f"/api/v1/portal/{test_space.id}/tasks/not-a-task/toggle", cookies=portal_cookies(test_space.id, CLIENT),
        )
        assert res.status_code == 400

    async def test_upload_and_download(self, client: AsyncClient, db_session, test_space, stakeholder):
        page = await make_page(db_session, test_space)
        block = await make_block(db_session, page, "file_upload", {"label": "Logo"})
        cookies = portal_cookies(test_space.id, CLIENT)

        res = await client.post(
            f"/api/v1/portal/{test_space.id}/blocks/{block.id}/files",
            json={"file_name": "logo.png", "file_size": 512, "mime_type": "image/png"},
            cookies=cookies,
        )
        assert res.status_code == 201
        file_id = res.json()["file_id"]

        res = await client.get(f"/api/v1/portal/{test_space.id}/files/{file_id}/download", cookies=cookies)
        assert res.status_code == 200
        assert res.json()["file_name"] == "logo.png"
        assert "signature=" in res.json()["url"]

        res = await client.delete(f"/api/v1/portal/{test_space.id}/files/{file_id}", cookies=cookies)
        assert res.status_code == 200

    async def test_visit_tracking(self, client: AsyncClient, test_space, stakeholder, test_user):
        cookies = portal_cookies(test_space.id, CLIENT)
        first = await client.post(f"/api/v1/portal/{test_space.id}/visit", cookies=cookies)
        again = await client.post(f"/api/v1/portal/{test_space.id}/visit", cookies=cookies)
        staff = await client.post(f"/api/v1/portal/{test_space.id}/visit", headers=get_auth_headers(test_user))

        assert first.json() == {"logged": True, "first_visit": True}
        assert again.json() == {"logged": True, "first_visit": False}
        assert staff.json() == {"logged": False, "first_visit": False}


@pytest.mark.asyncio
class TestHiddenPages:
    async def _seed(self, db_session, test_space):
        welcome = await make_page(db_session, test_space, "Welcome", sort_order=0)
        hidden = await make_page(db_session, test_space, "Internal notes", sort_order=1, is_visible=False)
        await make_block(db_session, welcome, "task", task_content(("t1", "Kickoff call", "2999-01-01")))
        tasks = await make_block(db_session, hidden, "task", task_content(("t1", "Secret renewal pricing", "2999-01-02")))
        form = await make_block(db_session, hidden, "form", form_content("q1"), sort_order=1)
        upload = await make_block(db_session, hidden, "file_upload", {}, sort_order=2)
        return tasks, form, upload

    async def test_page_progress_skips_hidden_pages(self, client: AsyncClient, db_session, test_space, stakeholder, test_user):
        await self._seed(db_session, test_space)
        url = f"/api/v1/portal/{test_space.id}/progress/pages"

        as_client = await client.get(url, cookies=portal_cookies(test_space.id, CLIENT))
        as_staff = await client.get(url, headers=get_auth_headers(test_user))
        assert [p["title"] for p in as_client.json()] == ["Welcome"]
        assert [p["title"] for p in as_staff.json()] == ["Welcome", "Internal notes"]

    async def test_upcoming_tasks_skip_hidden_pages(self, client: AsyncClient, db_session, test_space, stakeholder, test_user):
        await self._seed(db_session, test_space)
        url = f"/api/v1/portal/{test_space.id}/tasks/upcoming"

        as_client = await client.get(url, cookies=portal_cookies(test_space.id, CLIENT))
        as_staff = await client.get(url, headers=get_auth_headers(test_user))
        assert [t["title"] for t in as_client.json()] == ["Kickoff call"]
        assert [t["title"] for t in as_staff.json()] == ["Kickoff call", "Secret renewal pricing"]

    async def test_toggle_on_hidden_page_is_404(self, client: AsyncClient, db_session, test_space, stakeholder, test_user):
        tasks, _, _ = await self._seed(db_session, test_space)
        url = f"/api/v1/portal/{test_space.id}/tasks/{external_task_id(tasks.id, 't1')}/toggle"

        res = await client.post(url, cookies=portal_cookies(test_space.id, CLIENT))
        assert res.status_code == 404
        res = await client.post(url, headers=get_auth_headers(test_user))
        assert res.status_code == 200

    async def test_response_on_hidden_page_is_404(self, client: AsyncClient, db_session, test_space, stakeholder):
        _, form, _ = await self._seed(db_session, test_space)
        res = await client.put(
            f"/api/v1/portal/{test_space.id}/blocks/{form.id}/response",
            json={"value": {"questions": {"q1": {"text": "guess"}}}},
            cookies=portal_cookies(test_space.id, CLIENT),
        )
        assert res.status_code == 404

    async def test_upload_on_hidden_page_is_404(self, client: AsyncClient, db_session, test_space, stakeholder):
        _, _, upload = await self._seed(db_session, test_space)
        res = await client.post(
            f"/api/v1/portal/{test_space.id}/blocks/{upload.id}/files",
            json={"file_name": "leak.pdf", "file_size": 10},
            cookies=portal_cookies(test_space.id, CLIENT),
        )
        assert res.status_code == 404

    async def test_file_on_hidden_page_is_404(self, client: AsyncClient, db_session, test_space, stakeholder, test_user):
        _, _, upload = await self._seed(db_session, test_space)
        record = await make_file(db_session, upload, test_space)
        cookies = portal_cookies(test_space.id, CLIENT)

        res = await client.get(f"/api/v1/portal/{test_space.id}/files/{record.id}/download", cookies=cookies)
        assert res.status_code == 404
        res = await client.delete(f"/api/v1/portal/{test_space.id}/files/{record.id}", cookies=cookies)
        assert res.status_code == 404
        res = await client.get(
            f"/api/v1/portal/{test_space.id}/files/{record.id}/download", headers=get_auth_headers(test_user),
        )
        assert res.status_code == 200
