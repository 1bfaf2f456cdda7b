import logging

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import models  # noqa: F401
from app.api.v1.main import api_router
from app.core.config import settings
from app.core.database import Base, engine
from app.core.runtime import FlowRuntime

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# Create all database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
)

# Parse CORS origins from comma-separated string in settings
cors_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
async def read_root():
    return {"message": "ChatFlow runtime is running"}


scheduler = AsyncIOScheduler()


@app.on_event("startup")
async def on_startup():
    app.state.runtime = FlowRuntime(settings)
    logger.info("[Startup] Flow runtime created")

    scheduler.add_job(
        app.state.runtime.purge_expired_memories,
        'interval',
        seconds=settings.MEMORY_PURGE_INTERVAL_SECONDS,
        id='memory_purge',
        replace_existing=True
    )
    if not scheduler.running:
        scheduler.start()
    logger.info("[Startup] Memory purge scheduler started (interval: %ss)", settings.MEMORY_PURGE_INTERVAL_SECONDS)


@app.on_event("shutdown")
async def on_shutdown():
    logger.info("Server is shutting down...")
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("[Shutdown] Scheduler stopped")

    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.close()


if __name__ == "__main__":
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
