from __future__ import annotations
from typing import Any, Dict, AsyncGenerator
from fastapi import Depends, Header
import logging
import time
import uuid
import httpx
import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .core.config import get_settings
from .core.errors import Forbidden, Unauthorized, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

settings = get_settings()

_JWKS: Dict[str, Any] | None = None
_JWKS_TS: float = 0.0
_JWKS_TTL: int = 3600

ADMIN_ROLES = {"admin", "service"}

async def fetch_jwks() -> Dict[str, Any]:
    global _JWKS, _JWKS_TS
    now = time.time()
    if _JWKS is None or (now - _JWKS_TS) > _JWKS_TTL:
        async with httpx.AsyncClient() as client:
            r = await client.get(settings.auth_jwks_url, timeout=5.0)
            r.raise_for_status()
            _JWKS = r.json()
            _JWKS_TS = now
            logger.info("refreshed JWKS from %s", settings.auth_jwks_url)
    return _JWKS

async def get_signing_key():
    from jwt.algorithms import RSAAlgorithm
    jwks = await fetch_jwks()
    key = jwks["keys"][0]
    return RSAAlgorithm.from_jwk(key)

def _decode(token: str, key, algorithms: list[str], issuer: str | None = None) -> Dict[str, Any]:
    try:
        return jwt.decode(token, key=key, algorithms=algorithms, issuer=issuer, options={"verify_aud": False})
    except jwt.PyJWTError as e:
        raise Unauthorized(f"invalid token: {e}")

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized("missing token")
    token = authorization.split(" ", 1)[1].strip()
    if settings.auth_shared_secret:
        payload = _decode(token, settings.auth_shared_secret, ["HS256"])
    elif settings.auth_jwks_url:
        try:
            key = await get_signing_key()
        except httpx.HTTPError as e:
            raise UpstreamError(f"jwks unavailable: {e}")
        payload = _decode(token, key, ["RS256"], issuer=settings.token_issuer)
    else:
        raise Unauthorized("no token verifier configured")
    if "sub" not in payload or "role" not in payload:
        raise Unauthorized("invalid token payload")
    if "org_ids" not in payload or not isinstance(payload["org_ids"], list):
        payload["org_ids"] = []
    return payload

def org_scope(claims: Dict[str, Any]) -> uuid.UUID:
    raw = claims.get("org_id") or (claims["org_ids"][0] if claims.get("org_ids") else None)
    if not raw:
        raise Unauthorized("token carries no organization scope")
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        raise Unauthorized("organization scope is not a valid id")

async def require_org_id(claims: Dict[str, Any] = Depends(get_claims)) -> uuid.UUID:
    return org_scope(claims)

async def require_admin(claims: Dict[str, Any] = Depends(get_claims)) -> Dict[str, Any]:
    if claims.get("role") not in ADMIN_ROLES:
        raise Forbidden("admin or service role required")
    return claims

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for s in get_session():
        yield s

# --- outbound: central store (kiosk side only) ---

def _central(base_url: str | None, token: str | None) -> tuple[str, dict]:
    base_url = base_url or settings.central_base_url
    token = token or settings.central_token
    if not base_url:
        raise ValidationError("CENTRAL_BASE_URL is not configured")
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return base_url.rstrip("/"), headers

async def central_fetch_snapshot(
    *, base_url: str | None = None, token: str | None = None, transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    base, headers = _central(base_url, token)
    async with httpx.AsyncClient(transport=transport) as client:
        try:
            r = await client.get(f"{base}/sync/snapshot", headers=headers, timeout=15.0)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamError(f"snapshot fetch failed: {e}")
        return r.json()

async def central_push_snapshot(
    payload: dict, *, base_url: str | None = None, token: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    base, headers = _central(base_url, token)
    headers["Content-Type"] = "application/json"
    async with httpx.AsyncClient(transport=transport) as client:
        try:
            r = await client.post(f"{base}/sync/apply", headers=headers, json=payload, timeout=30.0)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamError(f"snapshot push failed: {e}")
        return r.json()

async def get_central_transport() -> httpx.AsyncBaseTransport | None:
    """Default network transport; overridden in tests with ``httpx.MockTransport``."""
    return None
