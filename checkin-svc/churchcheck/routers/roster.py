from __future__ import annotations
import uuid
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, require_org_id
from ..core.errors import NotFoundError, RateLimited
from ..core.redis import allow_request
from ..schemas import FamilyCreate, FamilyRead, OrgStats, PersonLookup, PersonRead, PersonUpdate
from ..services import roster as svc

router = APIRouter(tags=["roster"])

def _family_read(fam, persons) -> FamilyRead:
    return FamilyRead(
        id=fam.id, org_id=fam.org_id, name=fam.name, phone=fam.phone, email=fam.email,
        parent_name=fam.parent_name, is_volunteer=fam.is_volunteer,
        persons=[PersonRead.model_validate(p) for p in persons],
    )

@router.post("/families", response_model=FamilyRead, status_code=201)
async def create_family(payload: FamilyCreate, org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    fam, persons = await svc.create_family(db, org_id=org_id, data=payload.model_dump())
    return _family_read(fam, persons)

@router.get("/families", response_model=list[FamilyRead])
async def list_families(org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    return [_family_read(f, ps) for f, ps in await svc.list_families(db, org_id)]

@router.get("/volunteers", response_model=list[FamilyRead])
async def list_volunteers(org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    return [_family_read(f, ps) for f, ps in await svc.list_families(db, org_id, volunteers=True)]

@router.get("/families/by-phone/{phone}", response_model=FamilyRead)
async def family_by_phone(phone: str, org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    fam = await svc.get_family_by_phone(db, org_id, phone)
    if fam is None:
        raise NotFoundError("no family with that phone")
    grouped = await svc.persons_by_family(db, [fam.id])
    return _family_read(fam, grouped.get(fam.id, []))

@router.patch("/persons/{person_id}", response_model=PersonRead)
async def update_person(
    person_id: uuid.UUID, payload: PersonUpdate,
    org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db),
):
    person = await svc.update_person(db, org_id=org_id, person_id=person_id, changes=payload.model_dump(exclude_unset=True))
    return PersonRead.model_validate(person)

@router.get("/persons/pin/{pin}", response_model=PersonLookup)
async def lookup_person(
    pin: str, request: Request,
    org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db),
):
    # PINs are short and guessable: throttle per client
    ip = request.client.host if request.client else "unknown"
    if not await allow_request(ip, "persons.pin"):
        raise RateLimited("too many PIN lookups, slow down")
    found = await svc.lookup_by_pin(db, org_id, pin)
    return PersonLookup(
        person=PersonRead.model_validate(found["person"]),
        family_name=found["family_name"],
        is_volunteer=found["is_volunteer"],
        checked_in=found["checked_in"],
        next_reward=found["next_reward"],
    )

@router.get("/stats", response_model=OrgStats)
async def stats(org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    return OrgStats(**await svc.org_stats(db, org_id))
