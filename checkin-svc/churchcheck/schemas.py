from __future__ import annotations
from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from typing import Annotated, Literal
from uuid import UUID
from datetime import date, datetime, time, timezone

from .models import RewardTrigger

PosInt     = Annotated[int, Field(gt=0)]
Name128    = Annotated[str, Field(min_length=1, max_length=128)]
Name255    = Annotated[str, Field(min_length=1, max_length=255)]
Slug64     = Annotated[str, Field(min_length=2, max_length=64, pattern=r"^[A-Za-z0-9][A-Za-z0-9_-]*$")]
PinStr     = Annotated[str, Field(pattern=r"^\d{4,12}$")]

OptStr     = str | None

def _as_utc(v: datetime) -> datetime:
    # sqlite hands back naive values; every stored timestamp is UTC
    return v.replace(tzinfo=timezone.utc) if v.tzinfo is None else v

UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]

class ORM(BaseModel):
    model_config = ConfigDict(from_attributes=True)

# --- orgs
class OrgCreate(BaseModel):
    name: Name255
    slug: Slug64

class OrgRead(ORM):
    id: UUID
    name: str
    slug: str
    subscription_status: str
    created_at: datetime

# --- roster
class PersonCreate(BaseModel):
    first_name: Name128
    last_name: OptStr = None
    birth_date: OptStr = None       # ISO, MM/DD/YYYY or "Nov 17, 2012"
    gender: OptStr = None
    avatar: OptStr = None
    allergies: OptStr = None
    notes: OptStr = None

class PersonUpdate(BaseModel):
    first_name: Name128 | None = None
    last_name: OptStr = None
    birth_date: OptStr = None
    gender: OptStr = None
    avatar: OptStr = None
    allergies: OptStr = None
    notes: OptStr = None
    pin: PinStr | None = None
    regenerate_pin: bool = False

class PersonRead(ORM):
    id: UUID
    org_id: UUID
    family_id: UUID
    first_name: str
    last_name: OptStr
    name: str
    birth_date: date | None
    age: int | None
    gender: OptStr
    pin: str
    avatar: str
    allergies: OptStr
    notes: OptStr
    streak: int
    badges: int
    total_checkins: int

class FamilyCreate(BaseModel):
    name: Name255 | None = None     # defaults to "The {last name} Family"
    phone: str
    email: OptStr = None
    parent_name: OptStr = None
    is_volunteer: bool = False
    persons: list[PersonCreate] = Field(default_factory=list)

class FamilyRead(ORM):
    id: UUID
    org_id: UUID
    name: str
    phone: str
    email: OptStr
    parent_name: OptStr
    is_volunteer: bool
    persons: list[PersonRead] = Field(default_factory=list)

class NextReward(BaseModel):
    reward_id: UUID
    name: str
    prize: OptStr
    icon: OptStr
    trigger_type: RewardTrigger
    trigger_value: int
    progress: int
    remaining: int

class PersonLookup(BaseModel):
    person: PersonRead
    family_name: str
    is_volunteer: bool
    checked_in: bool
    next_reward: NextReward | None = None

# --- templates / rooms
class RoomCreate(BaseModel):
    name: Name128
    age_range: OptStr = None
    capacity: PosInt | None = None  # None = unbounded

class RoomRead(ORM):
    id: UUID
    org_id: UUID
    name: str
    age_range: OptStr
    capacity: int | None

class TemplateCreate(BaseModel):
    name: Name128
    day_of_week: OptStr = None
    start_time: time | None = None
    end_time: time | None = None
    room_ids: list[UUID] = Field(default_factory=list)
    checkout_enabled: bool = False
    streak_reset_days: PosInt | None = None
    is_active: bool = False

class TemplateUpdate(BaseModel):
    name: Name128 | None = None
    day_of_week: OptStr = None
    start_time: time | None = None
    end_time: time | None = None
    room_ids: list[UUID] | None = None
    checkout_enabled: bool | None = None
    streak_reset_days: PosInt | None = None
    is_active: bool | None = None

class TemplateRead(ORM):
    id: UUID
    org_id: UUID
    name: str
    day_of_week: OptStr
    start_time: time | None
    end_time: time | None
    room_ids: list[str]
    checkout_enabled: bool
    streak_reset_days: int | None
    is_active: bool

# --- rewards
class RewardCreate(BaseModel):
    name: Name128
    description: OptStr = None
    trigger_type: RewardTrigger
    trigger_value: PosInt
    prize: OptStr = None
    icon: OptStr = None
    enabled: bool = True

class RewardUpdate(BaseModel):
    name: Name128 | None = None
    description: OptStr = None
    trigger_value: PosInt | None = None
    prize: OptStr = None
    icon: OptStr = None
    enabled: bool | None = None

class RewardRead(ORM):
    id: UUID
    org_id: UUID
    name: str
    description: OptStr
    trigger_type: RewardTrigger
    trigger_value: int
    prize: OptStr
    icon: OptStr
    enabled: bool
    is_preset: bool

class EarnedRewardRead(ORM):
    id: UUID
    reward_id: UUID
    person_id: UUID
    session_id: UUID
    occurrence: int
    earned_at: datetime
    prize_claimed: bool
    name: OptStr = None
    prize: OptStr = None
    icon: OptStr = None

# --- check-in sessions
class CheckinOpen(BaseModel):
    person_id: UUID
    template_id: UUID | None = None  # None = org's active template
    room_id: UUID | None = None

class CheckinClose(BaseModel):
    person_id: UUID
    pickup_code: Annotated[str, Field(min_length=1, max_length=16)]

class SessionRead(ORM):
    id: UUID
    org_id: UUID
    person_id: UUID
    family_id: UUID
    template_id: UUID
    room_id: UUID | None
    pickup_code: str
    opened_at: UtcDatetime
    closed_at: UtcDatetime | None

class CheckinOpened(BaseModel):
    session: SessionRead
    pickup_code: str
    streak: int
    total_checkins: int
    badges: int
    rewards: list[EarnedRewardRead] = Field(default_factory=list)

class RosterEntry(BaseModel):
    session: SessionRead
    person_name: str
    pin: str
    allergies: OptStr
    room: OptStr
    template: str

class StreakLeader(BaseModel):
    person_id: UUID
    name: str
    streak: int
    total_checkins: int

class OrgStats(BaseModel):
    families: int
    persons: int
    volunteers: int
    total_checkins: int
    checkins_today: int
    open_sessions: int
    top_streaks: list[StreakLeader]

# --- sync (rows keyed by primary id; every row carries org_id)
class FamilyRow(ORM):
    id: UUID
    org_id: UUID
    name: str
    phone: str
    email: OptStr = None
    parent_name: OptStr = None
    is_volunteer: bool = False

class PersonRow(ORM):
    id: UUID
    org_id: UUID
    family_id: UUID
    first_name: str
    last_name: OptStr = None
    name: str
    birth_date: date | None = None
    gender: OptStr = None
    pin: str
    avatar: str = "explorer"
    allergies: OptStr = None
    notes: OptStr = None
    streak: int = 0
    badges: int = 0
    total_checkins: int = 0

class TemplateRow(ORM):
    id: UUID
    org_id: UUID
    name: str
    day_of_week: OptStr = None
    start_time: time | None = None
    end_time: time | None = None
    room_ids: list[str] = Field(default_factory=list)
    checkout_enabled: bool = False
    streak_reset_days: int | None = None
    is_active: bool = False

class RoomRow(ORM):
    id: UUID
    org_id: UUID
    name: str
    age_range: OptStr = None
    capacity: int | None = None

class RewardRow(ORM):
    id: UUID
    org_id: UUID
    name: str
    description: OptStr = None
    trigger_type: RewardTrigger
    trigger_value: int
    prize: OptStr = None
    icon: OptStr = None
    enabled: bool = True
    is_preset: bool = False

class SessionRow(ORM):
    id: UUID
    org_id: UUID
    person_id: UUID
    family_id: UUID
    template_id: UUID
    room_id: UUID | None = None
    pickup_code: str
    opened_at: UtcDatetime
    closed_at: UtcDatetime | None = None

class EarnedRewardRow(ORM):
    id: UUID
    org_id: UUID
    person_id: UUID
    reward_id: UUID
    session_id: UUID
    occurrence: int = 1
    earned_at: UtcDatetime
    prize_claimed: bool = False

class OrgRow(ORM):
    id: UUID
    name: str
    slug: str
    subscription_status: str = "active"

class Snapshot(BaseModel):
    org_id: UUID
    generated_at: UtcDatetime | None = None
    organization: OrgRow | None = None
    families: list[FamilyRow] = Field(default_factory=list)
    persons: list[PersonRow] = Field(default_factory=list)
    rooms: list[RoomRow] = Field(default_factory=list)
    templates: list[TemplateRow] = Field(default_factory=list)
    rewards: list[RewardRow] = Field(default_factory=list)
    sessions: list[SessionRow] = Field(default_factory=list)
    earned_rewards: list[EarnedRewardRow] = Field(default_factory=list)

class ApplyResult(BaseModel):
    inserted: dict[str, int]
    updated: dict[str, int]

# --- bulk import
class ImportRecord(BaseModel):
    first_name: Name128
    last_name: OptStr = None
    phone: OptStr = None
    email: OptStr = None
    birth_date: OptStr = None
    ref: OptStr = None              # guardian key; defaults to "first_last"
    guardian_ref: OptStr = None     # set on children: the guardian's ref
    is_volunteer: bool = False
    gender: OptStr = None
    allergies: OptStr = None

class ImportRequest(BaseModel):
    records: list[ImportRecord]

class ImportFailure(BaseModel):
    ref: str
    error: str
    detail: str

class ImportResult(BaseModel):
    imported: int = 0
    skipped: int = 0
    errored: int = 0
    persons_created: int = 0
    errors: list[ImportFailure] = Field(default_factory=list)

class SyncRunResult(BaseModel):
    direction: Literal["pull", "push"]
    counts: dict[str, int]
