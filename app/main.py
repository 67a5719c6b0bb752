"""
WhatsApp Reminder Bot - Main Application Entry Point

Reserves messages sent over WhatsApp and delivers them back at the time
inferred from their text, using FastAPI, Twilio, OpenAI, SQLite, and
APScheduler.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.whatsapp_webhook import router as whatsapp_router, get_reminder_service
from app.infrastructure.database import init_database
from app.infrastructure.scheduler import start_scheduler, stop_scheduler, get_scheduler
from app.infrastructure.twilio_whatsapp import deliver_reminder
from app.config.settings import get_settings
from app.usecases.reminder_service import VERSION

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.verbose else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting WhatsApp Reminder Bot...")

    await init_database()
    logger.info("Database initialized")

    service = get_reminder_service()
    await start_scheduler(
        service.store,
        deliver_reminder,
        interval_seconds=settings.monitor_interval_seconds,
        max_num_tries=settings.max_num_tries,
        timezone=settings.timezone,
    )

    logger.info("Application startup complete!")
    logger.info(f"Timezone: {settings.timezone}")
    logger.info(f"Twilio signature validation: {settings.validate_twilio_signature}")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await stop_scheduler()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="WhatsApp Reminder Bot",
    description="Reserves your messages and sends them back at the time they mention",
    version=VERSION,
    lifespan=lifespan
)

# Add CORS middleware (restricted to Twilio for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["https://api.twilio.com"],
    allow_credentials=True,
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)

app.include_router(whatsapp_router, tags=["WhatsApp"])


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "WhatsApp Reminder Bot",
        "version": VERSION,
        "status": "running",
        "endpoints": {
            "webhook": "/webhook/whatsapp",
            "health": "/health",
            "scheduler": "/scheduler/status",
        }
    }


@app.get("/scheduler/status")
async def scheduler_status():
    """Get scheduler status and its queue job."""
    scheduler = get_scheduler(settings.timezone)

    jobs = []
    for job in scheduler.get_jobs():
        # Jobs added before the scheduler starts have no next_run_time yet
        next_run = getattr(job, "next_run_time", None)
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": str(next_run) if next_run else None
        })

    return {
        "running": scheduler.running,
        "jobs_count": len(jobs),
        "jobs": jobs
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
