from __future__ import annotations
import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from ..deps import get_db, require_org_id
from ..core.errors import NotFoundError
from ..models import EarnedReward, Reward
from ..schemas import EarnedRewardRead, RewardCreate, RewardRead, RewardUpdate

router = APIRouter(prefix="/rewards", tags=["rewards"])

@router.get("", response_model=list[RewardRead])
async def list_rewards(org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    rows = (await db.execute(
        select(Reward).where(Reward.org_id == org_id).order_by(Reward.trigger_type, Reward.trigger_value)
    )).scalars().all()
    return [RewardRead.model_validate(r) for r in rows]

@router.post("", response_model=RewardRead, status_code=201)
async def create_reward(payload: RewardCreate, org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    r = Reward(org_id=org_id, is_preset=False, **payload.model_dump())
    db.add(r); await db.commit(); await db.refresh(r)
    return RewardRead.model_validate(r)

@router.patch("/{reward_id}", response_model=RewardRead)
async def update_reward(
    reward_id: uuid.UUID, payload: RewardUpdate,
    org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db),
):
    r = (await db.execute(select(Reward).where(Reward.id == reward_id, Reward.org_id == org_id))).scalar_one_or_none()
    if not r:
        raise NotFoundError("reward not found")
    for k, v in payload.model_dump(exclude_unset=True).items():
        setattr(r, k, v)
    await db.commit(); await db.refresh(r)
    return RewardRead.model_validate(r)

@router.get("/earned/{person_id}", response_model=list[EarnedRewardRead])
async def earned_for_person(person_id: uuid.UUID, org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    rows = (await db.execute(
        select(EarnedReward, Reward).join(Reward, Reward.id == EarnedReward.reward_id)
        .where(EarnedReward.org_id == org_id, EarnedReward.person_id == person_id)
        .order_by(EarnedReward.earned_at)
    )).all()
    return [
        EarnedRewardRead.model_validate(er).model_copy(update={"name": r.name, "prize": r.prize, "icon": r.icon})
        for er, r in rows
    ]

@router.post("/earned/{earned_id}/claim", response_model=EarnedRewardRead)
async def claim_prize(earned_id: uuid.UUID, org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    er = (await db.execute(
        select(EarnedReward).where(EarnedReward.id == earned_id, EarnedReward.org_id == org_id)
    )).scalar_one_or_none()
    if not er:
        raise NotFoundError("earned reward not found")
    er.prize_claimed = True
    await db.commit(); await db.refresh(er)
    return EarnedRewardRead.model_validate(er)
