"""
Test configuration and fixtures.

Provides:
- In-memory aiosqlite engine per test (StaticPool: one shared connection)
- Org / family / template / room fixtures built through the services
- HS256 token minting and an httpx AsyncClient over ASGITransport
"""
import os
import uuid
from typing import AsyncGenerator

import jwt
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Must be set before the app (and its cached settings) is imported
TEST_SECRET = "test-secret-for-hs256-tokens-only"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["AUTH_SHARED_SECRET"] = TEST_SECRET
os.environ["RL_ENABLED"] = "false"
os.environ["NATS_ENABLED"] = "false"
os.environ["SEED_PRESET_REWARDS"] = "true"
os.environ.pop("AUTH_JWKS_URL", None)
os.environ.pop("CENTRAL_BASE_URL", None)

from churchcheck.main import app
from churchcheck.db import build_engine, init_db
from churchcheck.deps import get_db
from churchcheck.models import Organization, Room, Template
from churchcheck.services.roster import create_family


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
async def engine():
    eng = build_engine("sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as s:
        yield s


# =============================================================================
# Roster fixtures
# =============================================================================

async def make_org(db: AsyncSession, slug: str) -> Organization:
    org = Organization(name=slug.title(), slug=slug)
    db.add(org)
    await db.commit()
    return org


@pytest.fixture
async def org(db) -> Organization:
    return await make_org(db, f"grace-{uuid.uuid4().hex[:6]}")


@pytest.fixture
async def other_org(db) -> Organization:
    return await make_org(db, f"hope-{uuid.uuid4().hex[:6]}")


@pytest.fixture
async def room(db, org) -> Room:
    r = Room(org_id=org.id, name="Room 102 - Pre-K", age_range="4-5", capacity=2)
    db.add(r)
    await db.commit()
    return r


@pytest.fixture
async def template(db, org, room) -> Template:
    t = Template(
        org_id=org.id, name="Sunday Morning", day_of_week="Sunday",
        room_ids=[str(room.id)], checkout_enabled=True, streak_reset_days=7, is_active=True,
    )
    db.add(t)
    await db.commit()
    return t


@pytest.fixture
async def family(db, org):
    """The Rivera family: two kids with distinct birth dates."""
    fam, persons = await create_family(db, org_id=org.id, data={
        "phone": "(555) 201-7788",
        "email": "rivera@example.com",
        "parent_name": "Ana Rivera",
        "persons": [
            {"first_name": "mateo", "last_name": "rivera", "birth_date": "2013-11-17", "allergies": "peanuts"},
            {"first_name": "Lucia", "last_name": "Rivera", "birth_date": "04/02/2016"},
        ],
    })
    return fam, persons


@pytest.fixture
def kid(family):
    return family[1][0]


# =============================================================================
# Auth / client
# =============================================================================

def make_token(org_id: uuid.UUID | None, role: str = "kiosk") -> str:
    claims = {"sub": str(uuid.uuid4()), "role": role}
    if org_id is not None:
        claims["org_id"] = str(org_id)
    return jwt.encode(claims, TEST_SECRET, algorithm="HS256")


def auth(org_id: uuid.UUID | None, role: str = "kiosk") -> dict:
    return {"Authorization": f"Bearer {make_token(org_id, role)}"}


@pytest.fixture
def headers(org) -> dict:
    return auth(org.id)


@pytest.fixture
def admin_headers(org) -> dict:
    return auth(org.id, role="admin")


@pytest.fixture
def auth_for():
    """Header factory for tokens scoped to another org or role."""
    return auth


@pytest.fixture
async def client(db) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()

