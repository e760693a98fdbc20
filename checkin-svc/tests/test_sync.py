"""
Tests for kiosk/central reconciliation and bulk roster import.

Coverage:
- Snapshot export (retention window) and apply into an empty store,
  organization row included
- Re-apply is idempotent: every row updates, nothing is inserted
- Cross-org rows and references are rejected as a whole
- Pull / push against a mocked central over httpx.MockTransport
- Import: grouping by guardian, volunteers, orphans, duplicate guardians,
  idempotent re-run
"""

import json
import uuid

import httpx
import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from churchcheck.core.errors import AuthorizationError, ConflictError, UpstreamError, ValidationError
from churchcheck.db import build_engine, init_db
from churchcheck.models import Family, Organization, Person, Reward, RewardTrigger
from churchcheck.schemas import ImportRecord, Snapshot
from churchcheck.services.checkins import close_session, open_session
from churchcheck.services.roster import create_family
from churchcheck.services.sync import apply_snapshot, export_snapshot, import_roster, pull_from_central, push_to_central

NOW = datetime(2024, 6, 2, 10, 0, tzinfo=timezone.utc)
CENTRAL = "http://central.test"


@pytest.fixture
async def store():
    """A second, empty store (the other side of a sync)."""
    eng = build_engine("sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    await init_db(eng)
    async with async_sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)() as s:
        yield s
    await eng.dispose()


async def mirror_org(db, org_id, slug="mirror") -> uuid.UUID:
    db.add(Organization(id=org_id, name="Mirror", slug=slug))
    await db.commit()
    return org_id


async def count(db, model, org_id) -> int:
    return (await db.execute(select(func.count(model.id)).where(model.org_id == org_id))).scalar_one()


# =============================================================================
# Export / apply
# =============================================================================

@pytest.mark.asyncio
async def test_export_respects_retention_window(db, org, template, kid):
    db.add(Reward(org_id=org.id, name="First Timer", trigger_type=RewardTrigger.CHECKIN_COUNT, trigger_value=1))
    await db.commit()
    org_id, tid, pid = org.id, template.id, kid.id

    old = await open_session(db, org_id=org_id, person_id=pid, template_id=tid, now=NOW - timedelta(days=120))
    await close_session(db, org_id=org_id, person_id=pid, pickup_code=old.session.pickup_code, now=NOW - timedelta(days=120))
    recent = await open_session(db, org_id=org_id, person_id=pid, template_id=tid, now=NOW - timedelta(days=3))

    snap = await export_snapshot(db, org_id, now=NOW, retention_days=90)
    assert [s["id"] for s in snap["sessions"]] == [str(recent.session.id)]
    # the first-timer reward was earned in the dropped session
    assert snap["earned_rewards"] == []
    assert len(snap["persons"]) == 2
    assert {p["pin"] for p in snap["persons"]} == {"111713", "040216"}
    json.dumps(snap)


@pytest.mark.asyncio
async def test_zero_retention_exports_no_history(db, org, template, kid):
    org_id, tid, pid = org.id, template.id, kid.id
    opened = await open_session(db, org_id=org_id, person_id=pid, template_id=tid, now=NOW - timedelta(hours=1))
    sid = str(opened.session.id)

    default = await export_snapshot(db, org_id, now=NOW)
    assert [s["id"] for s in default["sessions"]] == [sid]

    snap = await export_snapshot(db, org_id, now=NOW, retention_days=0)
    assert snap["sessions"] == []
    assert snap["earned_rewards"] == []
    assert len(snap["persons"]) == 2


@pytest.mark.asyncio
async def test_apply_into_empty_store_then_reapply(db, org, template, kid, store):
    org_id, slug, tid, pid = org.id, org.slug, template.id, kid.id
    await open_session(db, org_id=org_id, person_id=pid, template_id=tid, now=NOW)
    snap = Snapshot.model_validate(await export_snapshot(db, org_id, now=NOW))
    assert snap.organization.slug == slug

    # no organization row in the store yet: it arrives with the snapshot
    first = await apply_snapshot(store, org_id, snap)
    assert first["inserted"]["organizations"] == 1
    assert (await store.get(Organization, org_id)).slug == slug
    assert first["inserted"]["families"] == 1
    assert first["inserted"]["persons"] == 2
    assert first["inserted"]["sessions"] == 1
    assert sum(first["updated"].values()) == 0

    mateo = await store.get(Person, pid)
    assert (mateo.pin, mateo.streak, mateo.total_checkins) == ("111713", 1, 1)

    again = await apply_snapshot(store, org_id, snap)
    assert sum(again["inserted"].values()) == 0
    assert again["updated"]["organizations"] == 1
    assert again["updated"]["persons"] == 2
    assert await count(store, Person, org_id) == 2


@pytest.mark.asyncio
async def test_apply_rejects_foreign_rows(db, org, other_org, family):
    org_id, other_id = org.id, other_org.id
    snap = Snapshot.model_validate(await export_snapshot(db, org_id, now=NOW))

    with pytest.raises(AuthorizationError):
        await apply_snapshot(db, other_id, snap)

    # another tenant's organization row riding along in the caller's snapshot
    with pytest.raises(AuthorizationError):
        await apply_snapshot(db, other_id, Snapshot(org_id=other_id, organization=snap.organization))

    # rows relabelled to the caller's org, but the ids already live in another org
    hijack = snap.model_copy(update={
        "org_id": other_id,
        "organization": None,
        "families": [f.model_copy(update={"org_id": other_id}) for f in snap.families],
        "persons": [],
    })
    with pytest.raises(AuthorizationError):
        await apply_snapshot(db, other_id, hijack)
    assert await count(db, Family, other_id) == 0


@pytest.mark.asyncio
async def test_apply_rejects_foreign_and_missing_references(db, org, other_org, family):
    org_id, other_id = org.id, other_org.id
    fam_id = family[0].id
    snap = Snapshot.model_validate(await export_snapshot(db, org_id, now=NOW))
    row = snap.persons[0]

    stray = row.model_copy(update={"id": uuid.uuid4(), "org_id": other_id, "pin": "999999"})
    with pytest.raises(AuthorizationError):
        await apply_snapshot(db, other_id, Snapshot(org_id=other_id, persons=[stray]))

    orphan = row.model_copy(update={"id": uuid.uuid4(), "family_id": uuid.uuid4(), "pin": "999998"})
    with pytest.raises(ValidationError):
        await apply_snapshot(db, org_id, Snapshot(org_id=org_id, persons=[orphan]))

    assert await count(db, Person, org_id) == 2
    assert await count(db, Person, other_id) == 0
    assert (await db.get(Family, fam_id)) is not None


@pytest.mark.asyncio
async def test_apply_conflicting_row_is_all_or_nothing(db, org, family):
    org_id = org.id
    snap = Snapshot.model_validate(await export_snapshot(db, org_id, now=NOW))
    fam = snap.families[0]

    fresh = fam.model_copy(update={"id": uuid.uuid4(), "phone": "5559990000", "name": "The Lee Family"})
    twin = fam.model_copy(update={"id": uuid.uuid4()})  # new id, same phone as the Riveras
    with pytest.raises(ConflictError):
        await apply_snapshot(db, org_id, Snapshot(org_id=org_id, families=[fresh, twin]))
    assert await count(db, Family, org_id) == 1


# =============================================================================
# Pull / push against central
# =============================================================================

@pytest.mark.asyncio
async def test_pull_applies_central_snapshot(db, org, store):
    org_id = org.id
    await mirror_org(store, org_id)
    await create_family(store, org_id=org_id, data={
        "phone": "555-777-0001", "persons": [{"first_name": "Ivy", "last_name": "Moss", "birth_date": "2014-03-09"}],
    })
    central_snap = await export_snapshot(store, org_id, now=NOW)

    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, request.headers.get("authorization")))
        return httpx.Response(200, json=central_snap)

    counts = await pull_from_central(db, org_id, transport=httpx.MockTransport(handler), base_url=CENTRAL, token="tok")
    assert seen == [("GET", "/sync/snapshot", "Bearer tok")]
    assert counts["families"] == 1 and counts["persons"] == 1

    ivy = (await db.execute(select(Person).where(Person.org_id == org_id))).scalar_one()
    assert (ivy.name, ivy.pin) == ("Ivy Moss", "030914")


@pytest.mark.asyncio
async def test_first_pull_into_empty_store(db, org, family, store):
    org_id, slug = org.id, org.slug
    central_snap = await export_snapshot(db, org_id, now=NOW)
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=central_snap))

    counts = await pull_from_central(store, org_id, transport=transport, base_url=CENTRAL)
    assert counts["organizations"] == 1
    assert counts["families"] == 1 and counts["persons"] == 2

    kiosk_org = await store.get(Organization, org_id)
    assert (kiosk_org.slug, kiosk_org.subscription_status) == (slug, "active")
    pins_on_kiosk = (await store.execute(select(Person.pin).where(Person.org_id == org_id))).scalars().all()
    assert sorted(pins_on_kiosk) == ["040216", "111713"]


@pytest.mark.asyncio
async def test_push_sends_local_snapshot(db, org, family):
    org_id = org.id
    posted = {}

    def handler(request: httpx.Request) -> httpx.Response:
        posted.update(json.loads(request.content))
        return httpx.Response(200, json={"inserted": {"families": 1, "persons": 2}, "updated": {"families": 0, "persons": 0}})

    counts = await push_to_central(db, org_id, transport=httpx.MockTransport(handler), base_url=CENTRAL)
    assert posted["org_id"] == str(org_id)
    assert len(posted["persons"]) == 2
    assert counts == {"families": 1, "persons": 2}


@pytest.mark.asyncio
async def test_central_unavailable(db, org):
    org_id = org.id
    transport = httpx.MockTransport(lambda request: httpx.Response(503, text="down"))
    with pytest.raises(UpstreamError):
        await pull_from_central(db, org_id, transport=transport, base_url=CENTRAL)


# =============================================================================
# Bulk import
# =============================================================================

def _records() -> list[ImportRecord]:
    raw = [
        {"first_name": "Ana", "last_name": "Rivera", "phone": "(555) 201-0001", "ref": "ana"},
        {"first_name": "Mateo", "birth_date": "Nov 17, 2013", "guardian_ref": "ANA", "allergies": "peanuts"},
        {"first_name": "Lucia", "birth_date": "some time in 2016", "guardian_ref": "ana"},
        {"first_name": "Joe", "last_name": "Park", "phone": "555.201.0002", "is_volunteer": True},
        {"first_name": "Kim", "last_name": "Lee", "guardian_ref": "nobody"},
        {"first_name": "Bo", "last_name": "Diaz", "phone": "123"},
    ]
    return [ImportRecord.model_validate(r) for r in raw]


@pytest.mark.asyncio
async def test_import_groups_children_under_guardians(db, org):
    org_id = org.id
    res = await import_roster(db, org_id, _records())

    assert (res["imported"], res["skipped"], res["errored"], res["persons_created"]) == (2, 0, 2, 3)
    assert {e["ref"] for e in res["errors"]} == {"kim_lee", "bo_diaz"}
    assert all(e["error"] == "validation_error" for e in res["errors"])

    fams = {f.phone: f for f in (await db.execute(select(Family).where(Family.org_id == org_id))).scalars().all()}
    rivera = fams["5552010001"]
    assert (rivera.name, rivera.parent_name, rivera.is_volunteer) == ("The Rivera Family", "Ana Rivera", False)
    park = fams["5552010002"]
    assert park.is_volunteer is True

    people = {p.first_name: p for p in (await db.execute(select(Person).where(Person.org_id == org_id))).scalars().all()}
    assert set(people) == {"Mateo", "Lucia", "Joe"}
    assert people["Mateo"].family_id == rivera.id
    assert people["Mateo"].last_name == "Rivera"
    assert people["Mateo"].pin == "111713"
    # unparseable birth date: imported without one, random PIN
    assert people["Lucia"].birth_date is None
    assert len(people["Lucia"].pin) == 6
    assert people["Joe"].family_id == park.id


@pytest.mark.asyncio
async def test_import_is_idempotent(db, org):
    org_id = org.id
    await import_roster(db, org_id, _records())
    pins_before = sorted((await db.execute(select(Person.pin).where(Person.org_id == org_id))).scalars().all())

    res = await import_roster(db, org_id, _records())
    assert (res["imported"], res["skipped"], res["persons_created"]) == (0, 2, 0)
    assert await count(db, Family, org_id) == 2
    pins_after = sorted((await db.execute(select(Person.pin).where(Person.org_id == org_id))).scalars().all())
    assert pins_after == pins_before


@pytest.mark.asyncio
async def test_import_counts_guardians_sharing_a_name(db, org):
    org_id = org.id
    recs = [
        ImportRecord(first_name="John", last_name="Smith", phone="555-000-0001", is_volunteer=True),
        ImportRecord(first_name="John", last_name="Smith", phone="555-000-0002", is_volunteer=True),
    ]
    res = await import_roster(db, org_id, recs)

    assert (res["imported"], res["skipped"], res["errored"]) == (1, 0, 1)
    assert res["imported"] + res["skipped"] + res["errored"] == len(recs)
    [err] = res["errors"]
    assert (err["ref"], err["error"]) == ("john_smith", "validation_error")
    assert "duplicate guardian" in err["detail"]
    phones = (await db.execute(select(Family.phone).where(Family.org_id == org_id))).scalars().all()
    assert phones == ["5550000001"]


@pytest.mark.asyncio
async def test_import_skips_existing_phone(db, org, family):
    org_id = org.id
    rec = ImportRecord(first_name="Ana", last_name="Rivera", phone="555-201-7788")
    res = await import_roster(db, org_id, [rec])
    assert (res["imported"], res["skipped"]) == (0, 1)
    assert await count(db, Family, org_id) == 1
