import logging
import os
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flightsearch.config import settings

# ─── Logging setup (file + console) ───
_LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
_LOG_DIR.mkdir(exist_ok=True)

_log_level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)

logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        RotatingFileHandler(
            _LOG_DIR / "flightsearch.log",
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding="utf-8",
        ),
    ],
)

# Quiet noisy libraries
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

from flightsearch.dependencies import get_orchestrator, redis_connection, search_orchestrator
from flightsearch.routers import search
from flightsearch.services.search_orchestrator import SearchOrchestrator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: evict finished searches in the background
    scheduler = None
    if settings.scheduler_enabled:
        try:
            from apscheduler.schedulers.asyncio import AsyncIOScheduler
            from apscheduler.triggers.interval import IntervalTrigger

            scheduler = AsyncIOScheduler()

            async def _evict_finished_searches():
                count = search_orchestrator.tracker.evict_expired()
                if count:
                    logger.info(f"Search tracker: {count} finished searches evicted")

            scheduler.add_job(
                _evict_finished_searches,
                IntervalTrigger(seconds=settings.eviction_interval_seconds),
                id="evict_searches",
            )
            scheduler.start()
            logger.info("Background scheduler started")
        except Exception as e:
            logger.error(f"Scheduler failed to start: {e}")

    if redis_connection is not None and not await redis_connection.ping():
        logger.warning("Redis unreachable at startup; cache reads fall through to the sources")

    yield

    # Shutdown
    await search_orchestrator.close()
    if redis_connection is not None:
        await redis_connection.close()
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")


app = FastAPI(
    title="FlightSearch",
    description="Multi-source flight search orchestration",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(search.router, prefix="/api/search", tags=["search"])


@app.get("/api/health")
async def health_check(orchestrator: SearchOrchestrator = Depends(get_orchestrator)):
    health = await orchestrator.health_check()
    status_code = 503 if health["status"] == "unhealthy" else 200
    return JSONResponse(content=health, status_code=status_code)
