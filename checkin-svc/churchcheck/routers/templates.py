from __future__ import annotations
import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update

from ..deps import get_db, require_org_id
from ..core.errors import NotFoundError, ValidationError
from ..models import Room, Template
from ..schemas import RoomCreate, RoomRead, TemplateCreate, TemplateRead, TemplateUpdate

router = APIRouter(tags=["templates"])

async def _validate_rooms(db: AsyncSession, org_id: uuid.UUID, room_ids: list[uuid.UUID]) -> list[str]:
    if not room_ids:
        return []
    found = set((await db.execute(
        select(Room.id).where(Room.org_id == org_id, Room.id.in_(room_ids))
    )).scalars().all())
    missing = [str(r) for r in room_ids if r not in found]
    if missing:
        raise ValidationError(f"unknown rooms: {', '.join(missing)}")
    return [str(r) for r in room_ids]

async def _deactivate_others(db: AsyncSession, org_id: uuid.UUID, keep: uuid.UUID | None) -> None:
    # one active template per org: it is the default for check-ins that omit template_id
    stmt = update(Template).where(Template.org_id == org_id, Template.is_active == True)
    if keep is not None:
        stmt = stmt.where(Template.id != keep)
    await db.execute(stmt.values(is_active=False))

# --- rooms
@router.get("/rooms", response_model=list[RoomRead])
async def list_rooms(org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    rows = (await db.execute(select(Room).where(Room.org_id == org_id).order_by(Room.name))).scalars().all()
    return [RoomRead.model_validate(r) for r in rows]

@router.post("/rooms", response_model=RoomRead, status_code=201)
async def create_room(payload: RoomCreate, org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    r = Room(org_id=org_id, name=payload.name, age_range=payload.age_range, capacity=payload.capacity)
    db.add(r); await db.commit(); await db.refresh(r)
    return RoomRead.model_validate(r)

# --- templates
@router.get("/templates", response_model=list[TemplateRead])
async def list_templates(org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    rows = (await db.execute(select(Template).where(Template.org_id == org_id).order_by(Template.name))).scalars().all()
    return [TemplateRead.model_validate(t) for t in rows]

@router.get("/templates/active", response_model=TemplateRead | None)
async def active_template(org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    t = (await db.execute(
        select(Template).where(Template.org_id == org_id, Template.is_active == True)
    )).scalars().first()
    return TemplateRead.model_validate(t) if t else None

@router.post("/templates", response_model=TemplateRead, status_code=201)
async def create_template(payload: TemplateCreate, org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    data = payload.model_dump()
    data["room_ids"] = await _validate_rooms(db, org_id, payload.room_ids)
    if payload.is_active:
        await _deactivate_others(db, org_id, keep=None)
    t = Template(org_id=org_id, **data)
    db.add(t); await db.commit(); await db.refresh(t)
    return TemplateRead.model_validate(t)

@router.patch("/templates/{template_id}", response_model=TemplateRead)
async def update_template(
    template_id: uuid.UUID, payload: TemplateUpdate,
    org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db),
):
    t = (await db.execute(select(Template).where(Template.id == template_id, Template.org_id == org_id))).scalar_one_or_none()
    if not t:
        raise NotFoundError("template not found")
    changes = payload.model_dump(exclude_unset=True)
    if "room_ids" in changes:
        changes["room_ids"] = await _validate_rooms(db, org_id, payload.room_ids or [])
    if changes.get("is_active"):
        await _deactivate_others(db, org_id, keep=t.id)
    for k, v in changes.items():
        setattr(t, k, v)
    await db.commit(); await db.refresh(t)
    return TemplateRead.model_validate(t)
