"""
Tests for the check-in session engine.

Coverage:
- Open / close state machine and pickup-code pairing
- One open session per person (service check and storage index)
- Capacity, template and room validation
- All-or-nothing transitions
- Stale-session sweep and today's roster
"""

import uuid

import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from churchcheck.core.errors import (
    AlreadyCheckedIn, ConflictError, NoOpenSession, NotFoundError, PickupCodeMismatch,
    RoomCapacityExceeded, UnknownPerson, ValidationError,
)
from churchcheck.models import CheckinSession, Person, Room
from churchcheck.services import checkins as engine_mod
from churchcheck.services.checkins import (
    checked_in_event, close_session, open_session, sweep_stale_sessions, todays_roster,
)
from churchcheck.services.roster import create_family

SUNDAY = datetime(2024, 3, 3, 9, 30, tzinfo=timezone.utc)


async def _open_count(db, person_id) -> int:
    return (await db.execute(
        select(func.count(CheckinSession.id)).where(
            CheckinSession.person_id == person_id, CheckinSession.closed_at.is_(None)
        )
    )).scalar_one()


# =============================================================================
# Open / close
# =============================================================================

@pytest.mark.asyncio
async def test_open_issues_pickup_code_and_counts(db, org, template, room, kid):
    opened = await open_session(db, org_id=org.id, person_id=kid.id, template_id=template.id, room_id=room.id, now=SUNDAY)

    s = opened.session
    assert len(s.pickup_code) == 4
    assert s.closed_at is None
    assert s.family_id == kid.family_id
    assert opened.person.streak == 1
    assert opened.person.total_checkins == 1
    assert opened.room.name == "Room 102 - Pre-K"


@pytest.mark.asyncio
async def test_second_open_is_rejected(db, org, template, kid):
    org_id, tid, pid = org.id, template.id, kid.id
    await open_session(db, org_id=org_id, person_id=pid, template_id=tid, now=SUNDAY)

    with pytest.raises(AlreadyCheckedIn) as exc:
        await open_session(db, org_id=org_id, person_id=pid, template_id=tid, now=SUNDAY)
    assert isinstance(exc.value, ConflictError)
    assert await _open_count(db, pid) == 1

    person = await db.get(Person, pid)
    assert person.total_checkins == 1


@pytest.mark.asyncio
async def test_close_requires_matching_code(db, org, template, kid):
    org_id, pid = org.id, kid.id
    opened = await open_session(db, org_id=org_id, person_id=pid, template_id=template.id, now=SUNDAY)
    code, sid = opened.session.pickup_code, opened.session.id
    wrong = "ZZZZ" if code != "ZZZZ" else "YYYY"

    with pytest.raises(PickupCodeMismatch):
        await close_session(db, org_id=org_id, person_id=pid, pickup_code=wrong)
    assert await _open_count(db, pid) == 1

    closed = await close_session(db, org_id=org_id, person_id=pid, pickup_code=code, now=SUNDAY + timedelta(hours=1))
    assert closed.id == sid
    assert closed.pickup_code == code
    assert closed.closed_at is not None
    assert await _open_count(db, pid) == 0


@pytest.mark.asyncio
async def test_close_without_open_session(db, org, template, kid):
    pid = kid.id
    with pytest.raises(NoOpenSession):
        await close_session(db, org_id=org.id, person_id=pid, pickup_code="ABCD")


@pytest.mark.asyncio
async def test_checked_out_person_can_check_in_again(db, org, template, kid):
    pid = kid.id
    first = await open_session(db, org_id=org.id, person_id=pid, template_id=template.id, now=SUNDAY)
    await close_session(db, org_id=org.id, person_id=pid, pickup_code=first.session.pickup_code, now=SUNDAY)

    second = await open_session(db, org_id=org.id, person_id=pid, template_id=template.id, now=SUNDAY + timedelta(days=7))
    assert second.session.id != first.session.id
    assert second.person.total_checkins == 2


@pytest.mark.asyncio
async def test_unknown_or_foreign_person(db, org, other_org, template, kid):
    org_id, other_id, pid = org.id, other_org.id, kid.id
    with pytest.raises(UnknownPerson):
        await open_session(db, org_id=org_id, person_id=uuid.uuid4(), template_id=template.id)
    # a real person, but not in the caller's org
    with pytest.raises(UnknownPerson):
        await open_session(db, org_id=other_id, person_id=pid)


# =============================================================================
# Template / room validation
# =============================================================================

@pytest.mark.asyncio
async def test_omitted_template_uses_active_one(db, org, template, kid):
    tid = template.id
    opened = await open_session(db, org_id=org.id, person_id=kid.id, now=SUNDAY)
    assert opened.session.template_id == tid


@pytest.mark.asyncio
async def test_no_active_template(db, org, kid):
    with pytest.raises(NotFoundError):
        await open_session(db, org_id=org.id, person_id=kid.id, now=SUNDAY)


@pytest.mark.asyncio
async def test_room_must_belong_to_template(db, org, template, kid):
    gym = Room(org_id=org.id, name="Gym")
    db.add(gym)
    await db.commit()
    gym_id, pid = gym.id, kid.id

    with pytest.raises(ValidationError):
        await open_session(db, org_id=org.id, person_id=pid, template_id=template.id, room_id=gym_id, now=SUNDAY)
    assert await _open_count(db, pid) == 0


@pytest.mark.asyncio
async def test_room_capacity(db, org, template, room, family):
    # room capacity is 2: the Rivera kids fill it
    org_id, rid, tid = org.id, room.id, template.id
    for p in family[1]:
        await open_session(db, org_id=org_id, person_id=p.id, template_id=tid, room_id=rid, now=SUNDAY)

    _, others = await create_family(db, org_id=org_id, data={
        "phone": "555-400-1000", "persons": [{"first_name": "Sam", "last_name": "Okafor", "birth_date": "2015-06-01"}],
    })
    sam_id = others[0].id
    with pytest.raises(RoomCapacityExceeded):
        await open_session(db, org_id=org_id, person_id=sam_id, template_id=tid, room_id=rid, now=SUNDAY)
    assert await _open_count(db, sam_id) == 0

    # unbounded when no room is given
    opened = await open_session(db, org_id=org_id, person_id=sam_id, template_id=tid, now=SUNDAY)
    assert opened.session.room_id is None


# =============================================================================
# Uniqueness and atomicity
# =============================================================================

@pytest.mark.asyncio
async def test_pickup_codes_unique_among_open_sessions(db, org, template, family, monkeypatch):
    codes = iter(["AAAA", "AAAA", "AAAA", "BBBB"])
    monkeypatch.setattr(engine_mod, "generate_pickup_code", lambda length=4: next(codes))

    a, b = family[1]
    first = await open_session(db, org_id=org.id, person_id=a.id, template_id=template.id, now=SUNDAY)
    second = await open_session(db, org_id=org.id, person_id=b.id, template_id=template.id, now=SUNDAY)
    assert first.session.pickup_code == "AAAA"
    assert second.session.pickup_code == "BBBB"


@pytest.mark.asyncio
async def test_storage_rejects_second_open_session(db, org, template, kid):
    common = dict(org_id=org.id, person_id=kid.id, family_id=kid.family_id, template_id=template.id, opened_at=SUNDAY)
    db.add(CheckinSession(pickup_code="CCCC", **common))
    await db.commit()

    db.add(CheckinSession(pickup_code="DDDD", **common))
    with pytest.raises(IntegrityError):
        await db.commit()
    await db.rollback()


@pytest.mark.asyncio
async def test_failure_after_insert_leaves_no_trace(db, org, template, kid, monkeypatch):
    pid = kid.id

    async def boom(*args, **kwargs):
        raise RuntimeError("crash during reward evaluation")

    monkeypatch.setattr(engine_mod, "apply_checkin", boom)
    with pytest.raises(RuntimeError):
        await open_session(db, org_id=org.id, person_id=pid, template_id=template.id, now=SUNDAY)

    assert (await db.execute(select(func.count(CheckinSession.id)))).scalar_one() == 0
    person = await db.get(Person, pid)
    assert (person.streak, person.total_checkins, person.badges) == (0, 0, 0)


# =============================================================================
# Sweep, roster, event payload
# =============================================================================

@pytest.mark.asyncio
async def test_sweep_closes_stale_sessions(db, org, template, family):
    a, b = family[1]
    a_id, b_id = a.id, b.id
    await open_session(db, org_id=org.id, person_id=a_id, template_id=template.id, now=SUNDAY)
    await open_session(db, org_id=org.id, person_id=b_id, template_id=template.id, now=SUNDAY + timedelta(hours=20))

    swept = await sweep_stale_sessions(db, now=SUNDAY + timedelta(hours=21), max_age_hours=18)
    assert swept == 1
    assert await _open_count(db, a_id) == 0
    assert await _open_count(db, b_id) == 1


@pytest.mark.asyncio
async def test_todays_roster_and_event_payload(db, org, template, room, kid):
    opened = await open_session(db, org_id=org.id, person_id=kid.id, template_id=template.id, room_id=room.id, now=SUNDAY)

    roster = await todays_roster(db, org.id, now=SUNDAY + timedelta(hours=2))
    assert len(roster) == 1
    assert roster[0]["person_name"] == "Mateo Rivera"
    assert roster[0]["room"] == "Room 102 - Pre-K"
    assert roster[0]["template"] == "Sunday Morning"
    assert await todays_roster(db, org.id, now=SUNDAY + timedelta(days=1)) == []

    evt = checked_in_event(opened)
    assert evt["session_id"] == str(opened.session.id)
    assert evt["person"]["pin"] == "111713"
    assert evt["person"]["allergies"] == "peanuts"
    assert evt["pickup_code"] == opened.session.pickup_code
    assert evt["room"] == "Room 102 - Pre-K"
    assert evt["template"] == "Sunday Morning"
