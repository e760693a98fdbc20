from __future__ import annotations
import logging
import uuid
from datetime import date
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from ..core.config import get_settings
from ..models import CheckinSession, EarnedReward, Person, Reward, RewardTrigger, Template

logger = logging.getLogger(__name__)

settings = get_settings()

# (trigger, value, name, description, prize, icon)
PRESET_REWARDS = (
    (RewardTrigger.CHECKIN_COUNT, 1, "First Timer", "First ever check-in", "Welcome sticker pack", "🌟"),
    (RewardTrigger.CHECKIN_COUNT, 5, "Getting Started", "5 check-ins", "Bookmark", "📚"),
    (RewardTrigger.CHECKIN_COUNT, 10, "Regular Explorer", "10 check-ins", "Small toy from prize box", "🎮"),
    (RewardTrigger.CHECKIN_COUNT, 25, "Adventure Enthusiast", "25 check-ins", "T-shirt", "👕"),
    (RewardTrigger.CHECKIN_COUNT, 50, "Super Explorer", "50 check-ins", "Large prize from treasure chest", "🏆"),
    (RewardTrigger.CHECKIN_COUNT, 100, "Adventure Legend", "100 check-ins", "Gift bag + photo on Wall of Fame", "👑"),
    (RewardTrigger.STREAK, 4, "Consistent Kid", "4-week streak", "Bonus sticker sheet", "🔥"),
    (RewardTrigger.STREAK, 8, "Streak Master", "8-week streak", "Pick from the treasure box", "⚡"),
    (RewardTrigger.STREAK, 12, "Unstoppable", "12-week streak", "Premium prize + ice cream coupon", "💎"),
)

async def seed_preset_rewards(db: AsyncSession, org_id: uuid.UUID) -> int:
    """Adds the preset programme to an org that has no rewards yet. Caller commits."""
    existing = (await db.execute(select(func.count(Reward.id)).where(Reward.org_id == org_id))).scalar_one()
    if existing:
        return 0
    for trigger, value, name, desc, prize, icon in PRESET_REWARDS:
        db.add(Reward(org_id=org_id, name=name, description=desc, trigger_type=trigger, trigger_value=value,
                      prize=prize, icon=icon, enabled=True, is_preset=True))
    return len(PRESET_REWARDS)

def reset_window(template: Template | None) -> int:
    if template is not None and template.streak_reset_days:
        return template.streak_reset_days
    return settings.default_streak_reset_days

def next_streak(current: int, last_checkin: date | None, today: date, reset_days: int) -> int:
    """
    Streak after a check-in on ``today``.
    Same calendar day as the last check-in keeps the streak (minimum 1);
    a gap within ``reset_days`` extends it; a longer gap restarts at 1.
    """
    if last_checkin is None:
        return 1
    gap = (today - last_checkin).days
    if gap <= 0:
        return max(current, 1)
    if gap <= reset_days:
        return current + 1
    return 1

async def last_checkin_date(db: AsyncSession, person_id: uuid.UUID) -> date | None:
    last = (await db.execute(
        select(func.max(CheckinSession.opened_at)).where(CheckinSession.person_id == person_id)
    )).scalar_one_or_none()
    return last.date() if last is not None else None

async def apply_checkin(
    db: AsyncSession, person: Person, session: CheckinSession, *, template: Template, last_checkin: date | None,
) -> list[tuple[EarnedReward, Reward]]:
    """
    Streak/total update plus reward evaluation for one opened session.
    Runs inside the check-in transaction; nothing here commits.
    """
    old_streak, old_total = person.streak, person.total_checkins
    person.streak = next_streak(person.streak, last_checkin, session.opened_at.date(), reset_window(template))
    person.total_checkins = old_total + 1
    fired = await evaluate_rewards(db, person, session, old_streak=old_streak, old_total=old_total)
    logger.info(
        "person %s streak %d->%d total %d rewards %d",
        person.id, old_streak, person.streak, person.total_checkins, len(fired),
    )
    return fired

async def _earned_count(db: AsyncSession, person_id: uuid.UUID, reward_id: uuid.UUID) -> int:
    return (await db.execute(
        select(func.count(EarnedReward.id)).where(
            EarnedReward.person_id == person_id, EarnedReward.reward_id == reward_id
        )
    )).scalar_one()

async def evaluate_rewards(
    db: AsyncSession, person: Person, session: CheckinSession, *, old_streak: int, old_total: int,
) -> list[tuple[EarnedReward, Reward]]:
    rewards = (await db.execute(
        select(Reward).where(Reward.org_id == person.org_id, Reward.enabled == True).order_by(Reward.trigger_value)
    )).scalars().all()

    fired: list[tuple[EarnedReward, Reward]] = []
    for r in rewards:
        if r.trigger_type == RewardTrigger.STREAK:
            old, new = old_streak, person.streak
        else:
            old, new = old_total, person.total_checkins
        # fires on reaching the value, not on staying at or passing it
        if new != r.trigger_value or old == new:
            continue
        earned_before = await _earned_count(db, person.id, r.id)
        # totals only grow: a check-in milestone is earned once
        if r.trigger_type == RewardTrigger.CHECKIN_COUNT and earned_before:
            continue
        er = EarnedReward(
            org_id=person.org_id, person_id=person.id, reward_id=r.id, session_id=session.id,
            occurrence=earned_before + 1, earned_at=session.opened_at,
        )
        db.add(er)
        person.badges += 1
        fired.append((er, r))
    if fired:
        await db.flush()
    return fired

async def next_reward(db: AsyncSession, person: Person) -> dict | None:
    """Lowest-threshold enabled reward the person is still working toward."""
    earned_ids = set((await db.execute(
        select(EarnedReward.reward_id).where(EarnedReward.person_id == person.id)
    )).scalars().all())
    rewards = (await db.execute(
        select(Reward).where(Reward.org_id == person.org_id, Reward.enabled == True)
        .order_by(Reward.trigger_value.asc())
    )).scalars().all()
    for r in rewards:
        progress = person.streak if r.trigger_type == RewardTrigger.STREAK else person.total_checkins
        if r.trigger_value <= progress:
            continue
        if r.trigger_type == RewardTrigger.CHECKIN_COUNT and r.id in earned_ids:
            continue
        return {
            "reward_id": r.id, "name": r.name, "prize": r.prize, "icon": r.icon,
            "trigger_type": r.trigger_type, "trigger_value": r.trigger_value,
            "progress": progress, "remaining": r.trigger_value - progress,
        }
    return None
