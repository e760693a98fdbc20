"""Check-in session engine.

A person is ``Absent`` (no open session), ``CheckedIn`` (one session with
``closed_at`` NULL) or ``CheckedOut`` for that occurrence. Opening a session
locks the person row, and the partial unique index on open sessions makes a
lost race surface as ``AlreadyCheckedIn`` instead of a second open row.
Streak, totals and rewards are updated in the same transaction as the
session insert; every call commits once or rolls back entirely.
"""
from __future__ import annotations
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError

from ..core.codes import generate_pickup_code
from ..core.config import get_settings
from ..core.errors import (
    AlreadyCheckedIn, NoOpenSession, NotFoundError, PickupCodeMismatch, RoomCapacityExceeded,
    UnknownPerson, ValidationError,
)
from ..models import CheckinSession, EarnedReward, Person, Reward, Room, Template
from .rewards import apply_checkin, last_checkin_date

logger = logging.getLogger(__name__)

settings = get_settings()

PICKUP_CODE_ATTEMPTS = 16

def _now():
    return datetime.now(timezone.utc)

@dataclass
class OpenedSession:
    session: CheckinSession
    person: Person
    template: Template
    room: Room | None
    rewards: list[tuple[EarnedReward, Reward]] = field(default_factory=list)

async def _get_person(db: AsyncSession, org_id: uuid.UUID, person_id: uuid.UUID, *, lock: bool = False) -> Person:
    stmt = select(Person).where(Person.id == person_id, Person.org_id == org_id)
    if lock:
        stmt = stmt.with_for_update()
    person = (await db.execute(stmt)).scalar_one_or_none()
    if person is None:
        raise UnknownPerson(f"person {person_id} not found")
    return person

async def get_open_session(db: AsyncSession, person_id: uuid.UUID, *, lock: bool = False) -> CheckinSession | None:
    stmt = select(CheckinSession).where(CheckinSession.person_id == person_id, CheckinSession.closed_at.is_(None))
    if lock:
        stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()

async def resolve_template(db: AsyncSession, org_id: uuid.UUID, template_id: uuid.UUID | None) -> Template:
    if template_id is None:
        t = (await db.execute(
            select(Template).where(Template.org_id == org_id, Template.is_active == True).order_by(Template.name)
        )).scalars().first()
        if t is None:
            raise NotFoundError("no active template for this organization")
        return t
    t = (await db.execute(
        select(Template).where(Template.id == template_id, Template.org_id == org_id)
    )).scalar_one_or_none()
    if t is None:
        raise NotFoundError(f"template {template_id} not found")
    return t

async def _resolve_room(db: AsyncSession, org_id: uuid.UUID, template: Template, room_id: uuid.UUID | None) -> Room | None:
    if room_id is None:
        return None
    # locked so concurrent opens into the same room count each other
    room = (await db.execute(
        select(Room).where(Room.id == room_id, Room.org_id == org_id).with_for_update()
    )).scalar_one_or_none()
    if room is None:
        raise NotFoundError(f"room {room_id} not found")
    if template.room_ids and str(room_id) not in template.room_ids:
        raise ValidationError(f"room {room.name!r} is not used by template {template.name!r}")
    return room

async def _check_capacity(db: AsyncSession, room: Room) -> None:
    if room.capacity is None:
        return
    occupied = (await db.execute(
        select(func.count(CheckinSession.id)).where(
            CheckinSession.room_id == room.id, CheckinSession.closed_at.is_(None)
        )
    )).scalar_one()
    if occupied + 1 > room.capacity:
        raise RoomCapacityExceeded(f"room {room.name!r} is full ({occupied}/{room.capacity})")

async def _open_pickup_codes(db: AsyncSession, org_id: uuid.UUID) -> set[str]:
    rows = (await db.execute(
        select(CheckinSession.pickup_code).where(CheckinSession.org_id == org_id, CheckinSession.closed_at.is_(None))
    )).scalars().all()
    return set(rows)

async def _insert_session(db: AsyncSession, session: CheckinSession) -> CheckinSession:
    """Flush under a savepoint; a clash on the pickup code draws a new one."""
    in_use = await _open_pickup_codes(db, session.org_id)
    for _ in range(PICKUP_CODE_ATTEMPTS):
        code = generate_pickup_code(settings.pickup_code_length)
        if code in in_use:
            continue
        session.pickup_code = code
        try:
            async with db.begin_nested():
                db.add(session)
                await db.flush()
            return session
        except IntegrityError:
            if await get_open_session(db, session.person_id) is not None:
                raise AlreadyCheckedIn("person already has an open session")
            in_use = await _open_pickup_codes(db, session.org_id)
    raise ValidationError("could not allocate a free pickup code; raise PICKUP_CODE_LENGTH")

async def open_session(
    db: AsyncSession,
    *,
    org_id: uuid.UUID,
    person_id: uuid.UUID,
    template_id: uuid.UUID | None = None,
    room_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> OpenedSession:
    now = now or _now()
    try:
        person = await _get_person(db, org_id, person_id, lock=True)
        if await get_open_session(db, person.id) is not None:
            raise AlreadyCheckedIn(f"{person.name} is already checked in")
        template = await resolve_template(db, org_id, template_id)
        room = await _resolve_room(db, org_id, template, room_id)
        if room is not None:
            await _check_capacity(db, room)

        previous = await last_checkin_date(db, person.id)
        session = await _insert_session(db, CheckinSession(
            org_id=org_id, person_id=person.id, family_id=person.family_id,
            template_id=template.id, room_id=room.id if room else None, opened_at=now,
        ))
        fired = await apply_checkin(db, person, session, template=template, last_checkin=previous)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("checked in person %s org %s session %s", person.id, org_id, session.id)
    return OpenedSession(session=session, person=person, template=template, room=room, rewards=fired)

async def close_session(
    db: AsyncSession,
    *,
    org_id: uuid.UUID,
    person_id: uuid.UUID,
    pickup_code: str,
    now: datetime | None = None,
) -> CheckinSession:
    now = now or _now()
    try:
        person = await _get_person(db, org_id, person_id)
        session = await get_open_session(db, person.id, lock=True)
        if session is None:
            raise NoOpenSession(f"{person.name} has no open session")
        if not secrets.compare_digest(session.pickup_code.encode(), pickup_code.encode()):
            raise PickupCodeMismatch("pickup code does not match")
        session.closed_at = now
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("checked out person %s org %s session %s", person_id, org_id, session.id)
    return session

async def sweep_stale_sessions(db: AsyncSession, *, now: datetime | None = None, max_age_hours: int | None = None) -> int:
    """Closes sessions nobody checked out (templates without pickup) so the next occurrence is not blocked."""
    now = now or _now()
    cutoff = now - timedelta(hours=max_age_hours or settings.session_max_age_hours)
    res = await db.execute(
        update(CheckinSession)
        .where(CheckinSession.closed_at.is_(None), CheckinSession.opened_at < cutoff)
        .values(closed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if res.rowcount:
        logger.info("swept %d stale sessions", res.rowcount)
    return res.rowcount or 0

def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)

async def todays_roster(db: AsyncSession, org_id: uuid.UUID, *, now: datetime | None = None) -> list[dict]:
    since = start_of_day(now or _now())
    rows = (await db.execute(
        select(CheckinSession, Person, Template, Room)
        .join(Person, Person.id == CheckinSession.person_id)
        .join(Template, Template.id == CheckinSession.template_id)
        .outerjoin(Room, Room.id == CheckinSession.room_id)
        .where(CheckinSession.org_id == org_id, CheckinSession.opened_at >= since)
        .order_by(CheckinSession.opened_at.desc())
    )).all()
    return [
        {"session": s, "person_name": p.name, "pin": p.pin, "allergies": p.allergies,
         "room": r.name if r else None, "template": t.name}
        for s, p, t, r in rows
    ]

def checked_in_event(opened: OpenedSession) -> dict:
    """Print payload for the label layer; the session id doubles as idempotency key."""
    p, s = opened.person, opened.session
    return {
        "session_id": str(s.id),
        "org_id": str(s.org_id),
        "person": {
            "id": str(p.id), "name": p.name, "pin": p.pin, "avatar": p.avatar,
            "allergies": p.allergies, "notes": p.notes,
        },
        "pickup_code": s.pickup_code,
        "template": opened.template.name,
        "room": opened.room.name if opened.room else None,
        "checkout_enabled": opened.template.checkout_enabled,
        "opened_at": s.opened_at.isoformat(),
        "streak": p.streak,
        "rewards": [
            {"reward_id": str(r.id), "name": r.name, "prize": r.prize, "icon": r.icon, "occurrence": er.occurrence}
            for er, r in opened.rewards
        ],
    }
