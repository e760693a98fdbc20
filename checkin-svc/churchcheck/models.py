from __future__ import annotations
import uuid
from datetime import date, datetime, time, timezone
from enum import Enum
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import (
    UniqueConstraint, Index, CheckConstraint, ForeignKey, String, Text, Integer, Boolean, JSON,
    Enum as SqlEnum, text,
)
from sqlalchemy.types import Date, DateTime, Time

from .core.normalize import compute_age

Base = declarative_base()

def utcnow():
    return datetime.now(timezone.utc)

OPEN_SESSION = text("closed_at IS NULL")

class RewardTrigger(str, Enum):
    STREAK = "streak"                # fires when streak reaches trigger_value
    CHECKIN_COUNT = "checkin_count"  # fires when total_checkins reaches trigger_value

class Organization(Base):
    __tablename__ = "organizations"
    __table_args__ = (UniqueConstraint("slug", name="uq_orgs_slug"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_status: Mapped[str] = mapped_column(String(32), default="active", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class Family(Base):
    __tablename__ = "families"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(16), nullable=False)  # canonical digits only
    email: Mapped[str | None] = mapped_column(String(255))
    parent_name: Mapped[str | None] = mapped_column(String(255))
    is_volunteer: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("org_id", "phone", name="uq_families_org_phone"),
        Index("ix_families_org", "org_id"),
    )

class Person(Base):
    __tablename__ = "persons"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    family_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("families.id", ondelete="CASCADE"), nullable=False)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str | None] = mapped_column(String(128))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    birth_date: Mapped[date | None] = mapped_column(Date)
    gender: Mapped[str | None] = mapped_column(String(16))
    pin: Mapped[str] = mapped_column(String(12), nullable=False)
    avatar: Mapped[str] = mapped_column(String(64), default="explorer", nullable=False)
    allergies: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    badges: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_checkins: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("org_id", "pin", name="uq_persons_org_pin"),
        Index("ix_persons_org", "org_id"),
        Index("ix_persons_family", "family_id"),
    )

    @property
    def age(self) -> int | None:
        # derived on read, never persisted
        return compute_age(self.birth_date)

class Room(Base):
    __tablename__ = "rooms"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    age_range: Mapped[str | None] = mapped_column(String(32))
    capacity: Mapped[int | None] = mapped_column(Integer)  # null = unbounded

    __table_args__ = (
        CheckConstraint("capacity IS NULL OR capacity > 0", name="ck_rooms_capacity_pos"),
        Index("ix_rooms_org", "org_id"),
    )

class Template(Base):
    __tablename__ = "templates"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    day_of_week: Mapped[str | None] = mapped_column(String(16))
    start_time: Mapped[time | None] = mapped_column(Time)
    end_time: Mapped[time | None] = mapped_column(Time)
    room_ids: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    checkout_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    streak_reset_days: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (Index("ix_templates_org", "org_id"),)

class CheckinSession(Base):
    __tablename__ = "checkin_sessions"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    person_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("persons.id", ondelete="CASCADE"), nullable=False)
    family_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("families.id", ondelete="CASCADE"), nullable=False)
    template_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("templates.id"), nullable=False)
    room_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("rooms.id"), nullable=True)
    pickup_code: Mapped[str] = mapped_column(String(16), nullable=False)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)  # null = open

    __table_args__ = (
        # at most one open session per person
        Index("uq_sessions_open_person", "person_id", unique=True,
              postgresql_where=OPEN_SESSION, sqlite_where=OPEN_SESSION),
        Index("uq_sessions_open_pickup", "org_id", "pickup_code", unique=True,
              postgresql_where=OPEN_SESSION, sqlite_where=OPEN_SESSION),
        Index("ix_sessions_org_opened", "org_id", "opened_at"),
        Index("ix_sessions_person_opened", "person_id", "opened_at"),
    )

class Reward(Base):
    __tablename__ = "rewards"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    trigger_type: Mapped[RewardTrigger] = mapped_column(SqlEnum(RewardTrigger), nullable=False)
    trigger_value: Mapped[int] = mapped_column(Integer, nullable=False)
    prize: Mapped[str | None] = mapped_column(String(255))
    icon: Mapped[str | None] = mapped_column(String(16))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_preset: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        CheckConstraint("trigger_value > 0", name="ck_rewards_trigger_pos"),
        Index("ix_rewards_org", "org_id"),
    )

class EarnedReward(Base):
    __tablename__ = "earned_rewards"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    person_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("persons.id", ondelete="CASCADE"), nullable=False)
    reward_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("rewards.id", ondelete="CASCADE"), nullable=False)
    session_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("checkin_sessions.id", ondelete="CASCADE"), nullable=False)
    # n-th time this person reached this milestone (streak rewards can be re-earned after a reset)
    occurrence: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    earned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    prize_claimed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("person_id", "reward_id", "occurrence", name="uq_earned_person_reward_occurrence"),
        Index("ix_earned_person", "person_id"),
    )
