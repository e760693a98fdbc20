"""Reconciliation between an offline kiosk store and the central store.

Everything here is scoped to one organization. Snapshots are JSON row sets
keyed by primary id; applying one is an upsert (last writer wins per row)
that never deletes, and a single call is all-or-nothing. Bulk import is the
exception to all-or-nothing: each family is applied under its own savepoint
so one bad record only costs that family.
"""
from __future__ import annotations
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..core.config import get_settings
from ..core.errors import AuthorizationError, ConflictError, DomainError, ValidationError
from ..core.normalize import display_name, normalize_phone
from ..deps import central_fetch_snapshot, central_push_snapshot
from ..models import CheckinSession, EarnedReward, Family, Organization, Person, Reward, Room, Template
from ..schemas import (
    EarnedRewardRow, FamilyRow, ImportRecord, OrgRow, PersonRow, RewardRow, RoomRow, SessionRow, Snapshot,
    TemplateRow,
)
from .pins import PinRegistry
from .roster import family_display_name, get_family_by_phone, new_person

logger = logging.getLogger(__name__)

settings = get_settings()

# parents before children so FK checks see flushed rows
TABLES = (
    ("families", Family, FamilyRow),
    ("rooms", Room, RoomRow),
    ("templates", Template, TemplateRow),
    ("rewards", Reward, RewardRow),
    ("persons", Person, PersonRow),
    ("sessions", CheckinSession, SessionRow),
    ("earned_rewards", EarnedReward, EarnedRewardRow),
)

REFERENCES = {
    "persons": (("family_id", Family),),
    "sessions": (("person_id", Person), ("family_id", Family), ("template_id", Template), ("room_id", Room)),
    "earned_rewards": (("person_id", Person), ("reward_id", Reward), ("session_id", CheckinSession)),
}

def _now():
    return datetime.now(timezone.utc)

# --- export ---

async def export_snapshot(
    db: AsyncSession, org_id: uuid.UUID, *, now: datetime | None = None, retention_days: int | None = None,
) -> dict:
    now = now or _now()
    if retention_days is None:
        retention_days = settings.sync_retention_days
    cutoff = now - timedelta(days=retention_days)

    async def rows(model, *where):
        stmt = select(model).where(model.org_id == org_id, *where).order_by(model.id)
        return (await db.execute(stmt)).scalars().all()

    sessions = await rows(CheckinSession, CheckinSession.opened_at >= cutoff)
    kept = {s.id for s in sessions}
    earned = [e for e in await rows(EarnedReward) if e.session_id in kept]
    org = await db.get(Organization, org_id)
    snap = Snapshot(
        org_id=org_id,
        generated_at=now,
        organization=OrgRow.model_validate(org) if org is not None else None,
        families=[FamilyRow.model_validate(o) for o in await rows(Family)],
        persons=[PersonRow.model_validate(o) for o in await rows(Person)],
        rooms=[RoomRow.model_validate(o) for o in await rows(Room)],
        templates=[TemplateRow.model_validate(o) for o in await rows(Template)],
        rewards=[RewardRow.model_validate(o) for o in await rows(Reward)],
        sessions=[SessionRow.model_validate(o) for o in sessions],
        earned_rewards=[EarnedRewardRow.model_validate(o) for o in earned],
    )
    logger.info("exported snapshot org %s: %d persons, %d sessions", org_id, len(snap.persons), len(snap.sessions))
    return snap.model_dump(mode="json")

# --- apply ---

async def _check_refs(db: AsyncSession, org_id: uuid.UUID, table: str, rows: list) -> None:
    for attr, model in REFERENCES.get(table, ()):
        ids = {getattr(r, attr) for r in rows if getattr(r, attr) is not None}
        if not ids:
            continue
        found = dict((await db.execute(select(model.id, model.org_id).where(model.id.in_(ids)))).all())
        for ref in ids:
            if ref not in found:
                raise ValidationError(f"{table}.{attr} {ref} does not exist")
            if found[ref] != org_id:
                raise AuthorizationError(f"{table}.{attr} {ref} belongs to another organization")

async def _upsert(db: AsyncSession, org_id: uuid.UUID, model, rows: list) -> tuple[int, int]:
    if not rows:
        return 0, 0
    existing = {o.id: o for o in (await db.execute(
        select(model).where(model.id.in_([r.id for r in rows]))
    )).scalars().all()}
    inserted = updated = 0
    for row in rows:
        values = row.model_dump()
        obj = existing.get(row.id)
        if obj is None:
            db.add(model(**values))
            inserted += 1
            continue
        if obj.org_id != org_id:
            raise AuthorizationError(f"{model.__tablename__} row {row.id} belongs to another organization")
        for k, v in values.items():
            setattr(obj, k, v)
        updated += 1
    await db.flush()
    return inserted, updated

async def _upsert_org(db: AsyncSession, row: OrgRow | None) -> tuple[int, int]:
    """The tenant row goes first so a kiosk with an empty store can take its first pull."""
    if row is None:
        return 0, 0
    org = await db.get(Organization, row.id)
    if org is None:
        db.add(Organization(**row.model_dump()))
        await db.flush()
        return 1, 0
    for k, v in row.model_dump(exclude={"id"}).items():
        setattr(org, k, v)
    await db.flush()
    return 0, 1

async def apply_snapshot(db: AsyncSession, org_id: uuid.UUID, snap: Snapshot) -> dict:
    if snap.org_id != org_id:
        raise AuthorizationError("snapshot is for another organization")
    if snap.organization is not None and snap.organization.id != org_id:
        raise AuthorizationError("snapshot carries another organization's row")
    for table, _, _ in TABLES:
        for row in getattr(snap, table):
            if row.org_id != org_id:
                raise AuthorizationError(f"{table} row {row.id} is scoped to another organization")

    inserted: dict[str, int] = {}
    updated: dict[str, int] = {}
    try:
        inserted["organizations"], updated["organizations"] = await _upsert_org(db, snap.organization)
        for table, model, _ in TABLES:
            rows = getattr(snap, table)
            await _check_refs(db, org_id, table, rows)
            inserted[table], updated[table] = await _upsert(db, org_id, model, rows)
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ConflictError(f"snapshot clashes with existing rows: {e.orig}")
    except Exception:
        await db.rollback()
        raise
    logger.info("applied snapshot org %s inserted=%s updated=%s", org_id, inserted, updated)
    return {"inserted": inserted, "updated": updated}

# --- bulk import ---

def guardian_key(rec: ImportRecord) -> str:
    return (rec.ref or f"{rec.first_name}_{rec.last_name or ''}").strip().lower()

async def _import_family(
    db: AsyncSession, registry: PinRegistry, org_id: uuid.UUID, guardian: ImportRecord, children: list[ImportRecord],
) -> int:
    members = children or ([guardian] if guardian.is_volunteer else [])
    fam = Family(
        org_id=org_id,
        phone=normalize_phone(guardian.phone),
        name=family_display_name(guardian.last_name or next((c.last_name for c in children if c.last_name), None)),
        email=guardian.email,
        parent_name=display_name(guardian.first_name, guardian.last_name),
        is_volunteer=guardian.is_volunteer,
    )
    db.add(fam)
    await db.flush()
    for rec in members:
        data = rec.model_dump()
        if not data.get("last_name"):
            data["last_name"] = guardian.last_name
        # an unparseable birth date only costs the derived PIN
        await registry.add_person(new_person(org_id, fam.id, data, strict=False))
    return len(members)

async def import_roster(db: AsyncSession, org_id: uuid.UUID, records: list[ImportRecord]) -> dict:
    """
    Families dedupe on normalized phone within the org: a phone already present
    is skipped, so re-running the same batch imports nothing new.
    """
    result = {"imported": 0, "skipped": 0, "errored": 0, "persons_created": 0, "errors": []}

    def fail(ref: str, err: Exception):
        result["errored"] += 1
        kind = err.kind if isinstance(err, DomainError) else "conflict"
        detail = err.detail if isinstance(err, DomainError) else "duplicate phone or PIN"
        result["errors"].append({"ref": ref, "error": kind, "detail": detail})

    guardians: dict[str, ImportRecord] = {}
    children: dict[str, list[ImportRecord]] = defaultdict(list)
    for rec in records:
        if rec.guardian_ref:
            children[rec.guardian_ref.strip().lower()].append(rec)
        elif guardian_key(rec) in guardians:
            fail(guardian_key(rec), ValidationError("duplicate guardian ref; give each guardian a unique ref"))
        else:
            guardians[guardian_key(rec)] = rec
    for ref, orphans in children.items():
        if ref not in guardians:
            for rec in orphans:
                fail(guardian_key(rec), ValidationError(f"unknown guardian_ref {ref!r}"))

    registry = PinRegistry(db, org_id)
    try:
        for ref, guardian in guardians.items():
            try:
                if await get_family_by_phone(db, org_id, guardian.phone) is not None:
                    result["skipped"] += 1
                    continue
                async with db.begin_nested():
                    n = await _import_family(db, registry, org_id, guardian, children.get(ref, []))
            except (DomainError, IntegrityError) as e:
                await registry.reload()
                fail(ref, e)
                continue
            result["imported"] += 1
            result["persons_created"] += n
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info(
        "import org %s: imported=%d skipped=%d errored=%d persons=%d",
        org_id, result["imported"], result["skipped"], result["errored"], result["persons_created"],
    )
    return result

# --- kiosk side ---

async def pull_from_central(
    db: AsyncSession, org_id: uuid.UUID, *, transport: httpx.AsyncBaseTransport | None = None, **kw,
) -> dict[str, int]:
    data = await central_fetch_snapshot(transport=transport, **kw)
    snap = Snapshot.model_validate(data)
    res = await apply_snapshot(db, org_id, snap)
    return {t: res["inserted"][t] + res["updated"][t] for t in res["inserted"]}

async def push_to_central(
    db: AsyncSession, org_id: uuid.UUID, *, transport: httpx.AsyncBaseTransport | None = None, **kw,
) -> dict[str, int]:
    payload = await export_snapshot(db, org_id)
    res = await central_push_snapshot(payload, transport=transport, **kw)
    return {t: res["inserted"].get(t, 0) + res["updated"].get(t, 0) for t in res.get("inserted", {})}

async def reconcile(db: AsyncSession, org_id: uuid.UUID, **kw) -> dict[str, dict[str, int]]:
    # push first: offline check-ins must reach central before its counters overwrite ours
    pushed = await push_to_central(db, org_id, **kw)
    pulled = await pull_from_central(db, org_id, **kw)
    return {"push": pushed, "pull": pulled}
