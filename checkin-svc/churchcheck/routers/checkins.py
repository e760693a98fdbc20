from __future__ import annotations
import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, require_org_id
from ..schemas import CheckinClose, CheckinOpen, CheckinOpened, EarnedRewardRead, RosterEntry, SessionRead
from ..services.checkins import checked_in_event, close_session, open_session, todays_roster
from ..core.nats import publish_checked_in

router = APIRouter(prefix="/checkins", tags=["checkins"])

# --- 1) Kiosk opens a session; labels go out over NATS after the commit
@router.post("", response_model=CheckinOpened, status_code=201)
async def check_in(payload: CheckinOpen, org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    opened = await open_session(
        db, org_id=org_id, person_id=payload.person_id, template_id=payload.template_id, room_id=payload.room_id,
    )
    # best-effort: a printer outage never fails the check-in
    await publish_checked_in(checked_in_event(opened))

    s, p = opened.session, opened.person
    return CheckinOpened(
        session=SessionRead.model_validate(s),
        pickup_code=s.pickup_code,
        streak=p.streak,
        total_checkins=p.total_checkins,
        badges=p.badges,
        rewards=[
            EarnedRewardRead.model_validate(er).model_copy(update={"name": r.name, "prize": r.prize, "icon": r.icon})
            for er, r in opened.rewards
        ],
    )

# --- 2) Pickup: the code printed on the parent's tag must match
@router.post("/close", response_model=SessionRead)
async def check_out(payload: CheckinClose, org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    s = await close_session(db, org_id=org_id, person_id=payload.person_id, pickup_code=payload.pickup_code)
    return SessionRead.model_validate(s)

# --- 3) Today's roster
@router.get("/today", response_model=list[RosterEntry])
async def today(org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    rows = await todays_roster(db, org_id)
    return [RosterEntry(**{**r, "session": SessionRead.model_validate(r["session"])}) for r in rows]
