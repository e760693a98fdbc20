"""Per-organization PIN assignment.

PINs are derived from the birth date (``MMDDYY``) so families can remember
them. Uniqueness is owned by the ``uq_persons_org_pin`` constraint: the
registry picks a candidate from the set of PINs it can see, inserts under a
savepoint, and on a uniqueness violation reloads the set and tries again.
No process-wide PIN cache exists, so any number of service instances can
assign concurrently.
"""
from __future__ import annotations
import logging
import re
import secrets
import uuid
from datetime import date
from typing import Iterator
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.codes import PIN_LENGTH, PIN_SPACE, random_pin
from ..core.config import get_settings
from ..core.errors import ConflictError, ExhaustionError, ValidationError
from ..models import Person

logger = logging.getLogger(__name__)

settings = get_settings()

RANDOM_ATTEMPTS = 64
_PIN_RE = re.compile(r"^\d{4,12}$")

def derive_pin(birth_date: date | None) -> str | None:
    if birth_date is None:
        return None
    return birth_date.strftime("%m%d%y")

def derived_candidates(base: str) -> Iterator[str]:
    """``base``, then the tail replaced by 1..9, then by 10..99 (length stays 6)."""
    yield base
    for n in range(1, 100):
        suffix = str(n)
        yield base[: PIN_LENGTH - len(suffix)] + suffix

def _random_free(taken: set[str]) -> str:
    for _ in range(RANDOM_ATTEMPTS):
        pin = random_pin()
        if pin not in taken:
            return pin
    # crowded space: walk from a random start so the result is still spread out
    start = secrets.randbelow(PIN_SPACE)
    for i in range(PIN_SPACE):
        pin = str((start + i) % PIN_SPACE).zfill(PIN_LENGTH)
        if pin not in taken:
            return pin
    raise ExhaustionError("every 6-digit PIN is assigned in this organization")

def choose_pin(taken: set[str], birth_date: date | None) -> str:
    if len(taken) >= PIN_SPACE:
        raise ExhaustionError("every 6-digit PIN is assigned in this organization")
    base = derive_pin(birth_date)
    if base is not None:
        for cand in derived_candidates(base):
            if cand not in taken:
                return cand
    return _random_free(taken)

class PinRegistry:
    """Assigns PINs for one organization inside the caller's transaction."""

    def __init__(self, db: AsyncSession, org_id: uuid.UUID, *, retries: int | None = None):
        self.db = db
        self.org_id = org_id
        self.retries = retries or settings.pin_assign_retries
        self._taken: set[str] | None = None

    async def reload(self) -> set[str]:
        rows = (await self.db.execute(select(Person.pin).where(Person.org_id == self.org_id))).scalars().all()
        self._taken = set(rows)
        return self._taken

    async def taken(self) -> set[str]:
        if self._taken is None:
            await self.reload()
        return self._taken  # type: ignore[return-value]

    async def add_person(self, person: Person) -> Person:
        """Give ``person`` a free PIN and flush it; retries on a concurrent claim."""
        if person.org_id != self.org_id:
            raise ValidationError("person belongs to another organization")
        for attempt in range(1, self.retries + 1):
            taken = await self.taken()
            person.pin = choose_pin(taken, person.birth_date)
            try:
                async with self.db.begin_nested():
                    self.db.add(person)
                    await self.db.flush()
            except IntegrityError:
                taken = await self.reload()
                if person.pin not in taken:
                    raise
                logger.info("pin collision for org %s, retry %d", self.org_id, attempt)
                continue
            taken.add(person.pin)
            return person
        raise ExhaustionError(f"could not claim a free PIN after {self.retries} attempts")

    async def claim(self, person: Person, pin: str) -> None:
        """Explicit admin-chosen PIN; must be well-formed and free."""
        pin = pin.strip()
        if not _PIN_RE.match(pin):
            raise ValidationError("pin must be 4-12 digits")
        if pin == person.pin:
            return
        owner = (await self.db.execute(
            select(Person.id).where(Person.org_id == self.org_id, Person.pin == pin)
        )).scalar_one_or_none()
        if owner is not None:
            raise ConflictError(f"pin {pin} is already assigned")
        person.pin = pin
        if self._taken is not None:
            self._taken.add(pin)

    async def regenerate(self, person: Person) -> str:
        """Re-derive from the current birth date; flushed under a savepoint like ``add_person``."""
        for attempt in range(1, self.retries + 1):
            taken = await self.taken()
            pin = choose_pin(taken - {person.pin}, person.birth_date)
            if pin == person.pin:
                return pin
            try:
                # pending edits flush when the savepoint opens; only the PIN change is inside it
                async with self.db.begin_nested():
                    person.pin = pin
                    await self.db.flush()
            except IntegrityError:
                await self.db.refresh(person)
                taken = await self.reload()
                if pin not in taken:
                    raise
                logger.info("pin collision for org %s on regenerate, retry %d", self.org_id, attempt)
                continue
            taken.add(pin)
            return pin
        raise ExhaustionError(f"could not claim a free PIN after {self.retries} attempts")
