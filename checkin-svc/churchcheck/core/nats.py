from __future__ import annotations
import json
import logging
from typing import Sequence
from nats.aio.client import Client as NATS
from .config import get_settings

logger = logging.getLogger(__name__)

_settings = get_settings()
_nats = NATS()

async def nats_connect():
    if not _settings.nats_enabled:
        return
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers, connect_timeout=2, max_reconnect_attempts=1)

async def nats_close():
    if _nats.is_connected:
        await _nats.drain()

async def publish_checked_in(evt: dict) -> bool:
    """
    Fire-and-forget CheckedIn event for the label printers.

    evt = {
      "session_id": str,          # idempotency key for consumers
      "org_id": str,
      "person": {"name", "pin", "avatar", "allergies", "notes"},
      "pickup_code": str,
      "template": str, "room": str | None, "checkout_enabled": bool,
      "opened_at": iso8601, "streak": int,
      "rewards": [{"reward_id", "name", "prize", "icon", "occurrence"}],
    }
    Returns False (and logs) when the event could not be handed to NATS.
    """
    if not _settings.nats_enabled:
        return False
    try:
        await nats_connect()
        await _nats.publish(_settings.nats_subject_checkin, json.dumps(evt).encode("utf-8"))
    except Exception as e:
        # printers are a side channel: a dropped label never undoes the check-in
        logger.warning("CheckedIn event for session %s not published: %s", evt.get("session_id"), e)
        return False
    return True
