from __future__ import annotations
import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_central_transport, get_db, org_scope, require_admin, require_org_id
from ..schemas import ApplyResult, ImportRequest, ImportResult, Snapshot, SyncRunResult
from ..services import sync as svc

router = APIRouter(prefix="/sync", tags=["sync"])

# --- central side
@router.get("/snapshot")
async def snapshot(org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    return await svc.export_snapshot(db, org_id)

@router.post("/apply", response_model=ApplyResult)
async def apply(payload: Snapshot, org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db)):
    return ApplyResult(**await svc.apply_snapshot(db, org_id, payload))

@router.post("/import", response_model=ImportResult)
async def bulk_import(payload: ImportRequest, claims: dict = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return ImportResult(**await svc.import_roster(db, org_scope(claims), payload.records))

# --- kiosk side
@router.post("/pull", response_model=SyncRunResult)
async def pull(
    org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db),
    transport=Depends(get_central_transport),
):
    return SyncRunResult(direction="pull", counts=await svc.pull_from_central(db, org_id, transport=transport))

@router.post("/push", response_model=SyncRunResult)
async def push(
    org_id: uuid.UUID = Depends(require_org_id), db: AsyncSession = Depends(get_db),
    transport=Depends(get_central_transport),
):
    return SyncRunResult(direction="push", counts=await svc.push_to_central(db, org_id, transport=transport))
