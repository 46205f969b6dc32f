# tests/conftest.py — Shared test fixtures
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["PORTAL_SESSION_SECRET"] = "test-portal-session-secret-at-least-32-chars"
os.environ["FILE_STORAGE_SECRET"] = "test-file-storage-secret"
os.environ["ENVIRONMENT"] = "test"

from models import (
    Base, Block, FileRecord, Organisation, OrganisationMember, Page, Response, Space,
    SpaceMember, SpaceStatus, User, UserRole,
)
from auth import AuthService, CurrentUser
from database import get_db_session
from portal_auth import cookie_name, create_portal_session
from main import app


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
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


async def _make_org(db_session, name: str, slug: str) -> Organisation:
    org = Organisation(id=str(uuid.uuid4()), name=name, slug=slug, is_active=True, settings={})
    db_session.add(org)
    await db_session.commit()
    await db_session.refresh(org)
    return org


async def _make_user(db_session, org: Organisation, email: str, password: str, role: UserRole) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=email.split("@")[0],
        password_hash=AuthService.hash_password(password),
        organisation_id=org.id,
        role=role,
        is_active=True,
    )
    db_session.add(user)
    await db_session.flush()
    db_session.add(OrganisationMember(user_id=user.id, organisation_id=org.id, role=role))
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_org(db_session):
    """Create a test organisation"""
    return await _make_org(db_session, "Test Organisation", "test-org")


@pytest_asyncio.fixture
async def other_org(db_session):
    return await _make_org(db_session, "Other Organisation", "other-org")


@pytest_asyncio.fixture
async def test_user(db_session, test_org):
    """Create a staff member"""
    return await _make_user(db_session, test_org, "testuser@launchpad.dev", "TestPassword123!", UserRole.MEMBER)


@pytest_asyncio.fixture
async def admin_user(db_session, test_org):
    """Create an org admin"""
    return await _make_user(db_session, test_org, "admin@launchpad.dev", "AdminPassword123!", UserRole.ORG_ADMIN)


@pytest_asyncio.fixture
async def outsider(db_session, other_org):
    """Staff user of a different organisation"""
    return await _make_user(db_session, other_org, "outsider@elsewhere.dev", "OutsiderPass123!", UserRole.ORG_ADMIN)


@pytest_asyncio.fixture
async def test_space(db_session, test_org, admin_user):
    return await make_space(db_session, test_org, status=SpaceStatus.ACTIVE, created_by=admin_user.id)


@pytest_asyncio.fixture
async def stakeholder(db_session, test_space):
    member = SpaceMember(space_id=test_space.id, invited_email="client@customer.com")
    db_session.add(member)
    await db_session.commit()
    await db_session.refresh(member)
    return member


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": user.id,
        "email": user.email,
        "organisation_id": user.organisation_id,
        "role": user.role.value if isinstance(user.role, UserRole) else user.role,
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}


def portal_cookies(space_id: str, email: str) -> dict:
    """Signed portal session cookie for a stakeholder"""
    return {cookie_name(space_id): create_portal_session(space_id, email)}


# ============================================================
# CONTENT SEEDING
# ============================================================

async def make_space(
    db_session,
    org: Organisation,
    name: str = "Acme Onboarding",
    status: SpaceStatus = SpaceStatus.ACTIVE,
    created_by: Optional[str] = None,
    **kwargs,
) -> Space:
    space = Space(
        id=str(uuid.uuid4()),
        organisation_id=org.id,
        name=name,
        client_name=kwargs.pop("client_name", "Acme"),
        status=status,
        created_by=created_by,
        **kwargs,
    )
    db_session.add(space)
    await db_session.commit()
    await db_session.refresh(space)
    return space


async def make_page(db_session, space: Space, title: str = "Welcome", slug: Optional[str] = None, **kwargs) -> Page:
    page = Page(
        id=str(uuid.uuid4()),
        space_id=space.id,
        title=title,
        slug=slug or title.lower().replace(" ", "-"),
        **kwargs,
    )
    db_session.add(page)
    await db_session.commit()
    await db_session.refresh(page)
    return page


async def make_block(db_session, page: Page, block_type: str, content: Dict[str, Any], sort_order: int = 0) -> Block:
    block = Block(id=str(uuid.uuid4()), page_id=page.id, type=block_type, content=content, sort_order=sort_order)
    db_session.add(block)
    await db_session.commit()
    await db_session.refresh(block)
    return block


async def make_response(db_session, block: Block, value: Dict[str, Any]) -> Response:
    response = Response(block_id=block.id, value=value)
    db_session.add(response)
    await db_session.commit()
    return response


async def make_file(db_session, block: Block, space: Space, name: str = "contract.pdf", **kwargs) -> FileRecord:
    record = FileRecord(
        block_id=block.id,
        space_id=space.id,
        original_name=name,
        mime_type="application/pdf",
        file_size_bytes=1024,
        storage_path=f"{space.id}/{block.id}/{name}",
        **kwargs,
    )
    db_session.add(record)
    await db_session.commit()
    await db_session.refresh(record)
    return record


def task_content(*tasks, title: str = "Kickoff tasks") -> Dict[str, Any]:
    """task_content(("t1", "Sign contract", "2024-01-10"), ("t2", "Share logo", None))"""
    return {
        "title": title,
        "tasks": [
            {"id": tid, "title": ttitle, **({"dueDate": due} if due else {})}
            for tid, ttitle, due in tasks
        ],
    }


def form_content(*question_ids, title: str = "Intake form") -> Dict[str, Any]:
    return {
        "title": title,
        "questions": [{"id": qid, "type": "text", "label": qid} for qid in question_ids],
    }


def utc(year, month, day, hour=12) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def current_user(user: User) -> CurrentUser:
    """Resolved staff identity, as the auth dependency would produce it"""
    return CurrentUser(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        organisation_id=user.organisation_id,
        role=user.role.value if isinstance(user.role, UserRole) else user.role,
        is_active=True,
        permissions=AuthService.get_user_permissions(user.role),
    )
