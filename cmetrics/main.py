"""CMetrics — FastAPI Application Entry Point.

Mentor performance ingestion and scoring service.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cmetrics.database import init_db, test_connection
from cmetrics.scheduler.jobs import start_scheduler, stop_scheduler
from cmetrics.api.ingestion_routes import router as ingestion_router
from cmetrics.api.mentor_routes import router as mentor_router
from cmetrics.core.logging import get_logger

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 CMetrics starting up...")
    if test_connection():
        try:
            init_db()
        except Exception as e:
            logger.error(f"❌ Table creation failed: {e}")
    else:
        logger.error("❌ Database NOT connected — endpoints will fail")
    start_scheduler()
    yield
    stop_scheduler()
    logger.info("CMetrics shut down")


app = FastAPI(
    title="CMetrics",
    description="Ingest mentor performance spreadsheets, merge them per mentor and period, and score against targets.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ingestion_router)
app.include_router(mentor_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "cmetrics",
        "version": "1.0.0",
    }
