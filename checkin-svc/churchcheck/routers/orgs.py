from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, require_admin
from ..schemas import OrgCreate, OrgRead
from ..services.roster import create_org

router = APIRouter(prefix="/orgs", tags=["organizations"])


@router.post("", response_model=OrgRead, status_code=201)
async def onboard_org(payload: OrgCreate, claims: dict = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    # slug uniqueness and preset rewards are handled by the service
    org = await create_org(db, name=payload.name, slug=payload.slug)
    return OrgRead.model_validate(org)
