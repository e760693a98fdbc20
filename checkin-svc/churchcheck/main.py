from __future__ import annotations
import logging
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .db import init_db, async_session_maker
from .core.config import get_settings
from .core.errors import DomainError
from .core.redis import ping_redis
from .core.nats import nats_connect, nats_close
from .services.checkins import sweep_stale_sessions
from .services.sync import reconcile
from .routers import checkins, orgs, rewards, roster, sync, templates

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

async def sweep_job():
    try:
        async with async_session_maker() as db:
            await sweep_stale_sessions(db)
    except Exception as e:
        logger.warning("stale-session sweep failed: %s", e)

async def sync_job():
    try:
        async with async_session_maker() as db:
            res = await reconcile(db, uuid.UUID(settings.sync_org_id))
        logger.info("scheduled sync done: %s", res)
    except Exception as e:
        # central unreachable is the normal offline case; next tick retries
        logger.warning("scheduled sync failed: %s", e)

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    # best-effort connect to infra; service still runs if these fail
    try:
        await nats_connect()
    except Exception as e:
        logger.warning("NATS unavailable, labels will not print: %s", e)
    await ping_redis()

    scheduler.add_job(sweep_job, "interval", seconds=settings.sweep_interval_seconds)
    if settings.central_base_url and settings.sync_org_id:
        scheduler.add_job(sync_job, "interval", seconds=settings.sync_interval_seconds)
        logger.info("kiosk sync every %ss against %s", settings.sync_interval_seconds, settings.central_base_url)
    scheduler.start()

    yield

    scheduler.shutdown(wait=False)
    try:
        await nats_close()
    except Exception as e:
        logger.warning("NATS drain failed: %s", e)

app = FastAPI(title="checkin-svc", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

app.include_router(orgs.router)
app.include_router(roster.router)
app.include_router(templates.router)
app.include_router(rewards.router)
app.include_router(checkins.router)
app.include_router(sync.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "checkin-svc"}

Instrumentator().instrument(app).expose(app)
