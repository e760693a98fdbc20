from __future__ import annotations
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError

from ..core.config import get_settings
from ..core.errors import ConflictError, NotFoundError, UnknownPerson, ValidationError
from ..core.normalize import capitalize, display_name, normalize_phone, parse_birth_date
from ..models import CheckinSession, Family, Organization, Person
from .checkins import get_open_session, start_of_day
from .pins import PinRegistry
from .rewards import next_reward, seed_preset_rewards

logger = logging.getLogger(__name__)

settings = get_settings()

def family_display_name(last_name: str | None) -> str:
    return f"The {capitalize(last_name)} Family" if last_name else "Family"

def _birth_date(raw: str | None, *, strict: bool):
    if raw is None or not raw.strip():
        return None
    parsed = parse_birth_date(raw)
    if parsed is None and strict:
        raise ValidationError(f"unrecognised birth date {raw!r}")
    return parsed

def new_person(org_id: uuid.UUID, family_id: uuid.UUID, data: dict, *, strict: bool = True) -> Person:
    first = capitalize(data.get("first_name"))
    if not first:
        raise ValidationError("first_name is required")
    last = capitalize(data.get("last_name")) or None
    return Person(
        org_id=org_id, family_id=family_id,
        first_name=first, last_name=last, name=display_name(first, last),
        birth_date=_birth_date(data.get("birth_date"), strict=strict),
        gender=data.get("gender"), avatar=data.get("avatar") or "explorer",
        allergies=data.get("allergies"), notes=data.get("notes"),
        streak=0, badges=0, total_checkins=0,
    )

async def create_org(db: AsyncSession, *, name: str, slug: str) -> Organization:
    slug = slug.strip().lower()
    if (await db.execute(select(Organization.id).where(Organization.slug == slug))).scalar_one_or_none():
        raise ConflictError(f"organization slug {slug!r} is taken")
    org = Organization(name=name.strip(), slug=slug)
    db.add(org)
    try:
        await db.flush()
        seeded = await seed_preset_rewards(db, org.id) if settings.seed_preset_rewards else 0
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(f"organization slug {slug!r} is taken")
    logger.info("created org %s (%s) with %d preset rewards", org.id, slug, seeded)
    return org

async def get_family_by_phone(db: AsyncSession, org_id: uuid.UUID, phone: str) -> Family | None:
    return (await db.execute(
        select(Family).where(Family.org_id == org_id, Family.phone == normalize_phone(phone))
    )).scalar_one_or_none()

async def persons_by_family(db: AsyncSession, family_ids: list[uuid.UUID]) -> dict[uuid.UUID, list[Person]]:
    grouped: dict[uuid.UUID, list[Person]] = defaultdict(list)
    if not family_ids:
        return grouped
    rows = (await db.execute(
        select(Person).where(Person.family_id.in_(family_ids)).order_by(Person.first_name)
    )).scalars().all()
    for p in rows:
        grouped[p.family_id].append(p)
    return grouped

async def create_family(db: AsyncSession, *, org_id: uuid.UUID, data: dict) -> tuple[Family, list[Person]]:
    phone = normalize_phone(data.get("phone"))
    persons_in = data.get("persons") or []
    try:
        if await get_family_by_phone(db, org_id, phone) is not None:
            raise ConflictError("a family with this phone already exists")
        first_last = next((p.get("last_name") for p in persons_in if p.get("last_name")), None)
        fam = Family(
            org_id=org_id, phone=phone,
            name=(data.get("name") or "").strip() or family_display_name(first_last),
            email=data.get("email"), parent_name=data.get("parent_name"),
            is_volunteer=bool(data.get("is_volunteer")),
        )
        db.add(fam)
        await db.flush()
        registry = PinRegistry(db, org_id)
        persons = [await registry.add_person(new_person(org_id, fam.id, p)) for p in persons_in]
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("family conflicts with an existing phone or PIN")
    except Exception:
        await db.rollback()
        raise
    logger.info("created family %s org %s with %d persons", fam.id, org_id, len(persons))
    return fam, persons

async def list_families(db: AsyncSession, org_id: uuid.UUID, *, volunteers: bool = False) -> list[tuple[Family, list[Person]]]:
    fams = (await db.execute(
        select(Family).where(Family.org_id == org_id, Family.is_volunteer == volunteers).order_by(Family.name)
    )).scalars().all()
    grouped = await persons_by_family(db, [f.id for f in fams])
    return [(f, grouped.get(f.id, [])) for f in fams]

async def update_person(db: AsyncSession, *, org_id: uuid.UUID, person_id: uuid.UUID, changes: dict) -> Person:
    """PIN stays unless ``pin`` or ``regenerate_pin`` is given; a new birth date alone never re-keys it."""
    person = (await db.execute(
        select(Person).where(Person.id == person_id, Person.org_id == org_id)
    )).scalar_one_or_none()
    if person is None:
        raise UnknownPerson(f"person {person_id} not found")
    new_pin = changes.pop("pin", None)
    regenerate = changes.pop("regenerate_pin", False)
    try:
        if "birth_date" in changes:
            person.birth_date = _birth_date(changes.pop("birth_date"), strict=True)
        if "first_name" in changes:
            if not changes.get("first_name"):
                raise ValidationError("first_name cannot be blank")
            person.first_name = capitalize(changes.pop("first_name"))
        if "last_name" in changes:
            person.last_name = capitalize(changes.pop("last_name")) or None
        for k in ("gender", "avatar", "allergies", "notes"):
            if k in changes:
                setattr(person, k, changes[k])
        person.name = display_name(person.first_name, person.last_name)

        registry = PinRegistry(db, org_id)
        if new_pin:
            await registry.claim(person, new_pin)
        elif regenerate:
            await registry.regenerate(person)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("pin is already assigned")
    except Exception:
        await db.rollback()
        raise
    return person

async def lookup_by_pin(db: AsyncSession, org_id: uuid.UUID, pin: str) -> dict:
    person = (await db.execute(
        select(Person).where(Person.org_id == org_id, Person.pin == pin.strip())
    )).scalar_one_or_none()
    if person is None:
        raise UnknownPerson("no one has that PIN")
    fam = (await db.execute(select(Family).where(Family.id == person.family_id))).scalar_one_or_none()
    if fam is None:
        raise NotFoundError("family record missing")
    return {
        "person": person,
        "family_name": fam.name,
        "is_volunteer": fam.is_volunteer,
        "checked_in": await get_open_session(db, person.id) is not None,
        "next_reward": await next_reward(db, person),
    }

async def org_stats(db: AsyncSession, org_id: uuid.UUID, *, now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)

    async def count(stmt) -> int:
        return int((await db.execute(stmt)).scalar_one())

    leaders = (await db.execute(
        select(Person).where(Person.org_id == org_id, Person.streak > 0)
        .order_by(Person.streak.desc(), Person.total_checkins.desc(), Person.name).limit(5)
    )).scalars().all()
    return {
        "families": await count(select(func.count(Family.id)).where(Family.org_id == org_id, Family.is_volunteer == False)),
        "volunteers": await count(select(func.count(Family.id)).where(Family.org_id == org_id, Family.is_volunteer == True)),
        "persons": await count(select(func.count(Person.id)).where(Person.org_id == org_id)),
        "total_checkins": await count(select(func.count(CheckinSession.id)).where(CheckinSession.org_id == org_id)),
        "checkins_today": await count(select(func.count(CheckinSession.id)).where(
            CheckinSession.org_id == org_id, CheckinSession.opened_at >= start_of_day(now))),
        "open_sessions": await count(select(func.count(CheckinSession.id)).where(
            CheckinSession.org_id == org_id, CheckinSession.closed_at.is_(None))),
        "top_streaks": [
            {"person_id": p.id, "name": p.name, "streak": p.streak, "total_checkins": p.total_checkins}
            for p in leaders
        ],
    }
