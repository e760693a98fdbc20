from __future__ import annotations
import re
from datetime import date, datetime

from .errors import ValidationError

_BIRTH_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%b %d, %Y", "%B %d, %Y", "%b %d %Y")

def normalize_phone(raw: str | None) -> str:
    """Canonical digits-only phone; 11 digits with a leading 1 lose the country code."""
    if not raw:
        raise ValidationError("phone is required")
    digits = re.sub(r"\D", "", raw)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    # 7-9 digits: legacy local numbers already in the roster
    if len(digits) == 10 or 7 <= len(digits) < 10:
        return digits
    raise ValidationError(f"invalid phone number: {raw!r}")

def parse_birth_date(raw: str | date | None) -> date | None:
    """Returns None for blank or unparseable input; PIN assignment falls back to random."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = raw.strip()
    if not text:
        return None
    for fmt in _BIRTH_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None

def compute_age(birth_date: date | None, today: date | None = None) -> int | None:
    if birth_date is None:
        return None
    today = today or date.today()
    age = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age if age >= 0 else None

def capitalize(name: str | None) -> str:
    if not name:
        return ""
    name = name.strip()
    return name[:1].upper() + name[1:].lower()

def display_name(first_name: str, last_name: str | None) -> str:
    return f"{first_name} {last_name}".strip() if last_name else first_name
