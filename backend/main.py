import logging
import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager

import database
from database import Base

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
from api import kds, audio, query, system
from auth.routes import router as auth_router
from scheduler import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)

SOUNDS_DIR = os.getenv("KDS_SOUNDS_DIR", os.path.join("public", "sounds"))
CORS_ORIGINS = [o.strip() for o in os.getenv("KDS_CORS_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: make sure the KDS tables exist. A database that is down must
    # not stop the API from serving emergency login and reconnect.
    try:
        async with database.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables verified")
    except Exception as e:
        logger.error(f"Database unavailable at startup: {e}")

    # Start the database watchdog
    start_scheduler()

    yield
    # Shutdown: Clean up resources
    stop_scheduler()
    await database.engine.dispose()


app = FastAPI(
    title="Kitchen Display System",
    description="Kitchen tickets, prep countdowns and alert sounds for POS orders",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware for displays
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth_router, prefix="/auth", tags=["Authentication"])
app.include_router(kds.router, prefix="/api/kds", tags=["KDS"])
app.include_router(audio.router, prefix="/api/audio", tags=["Audio"])
app.include_router(query.router, prefix="/api/query", tags=["Query"])
app.include_router(system.router, prefix="/api/system", tags=["System"])

# Built-in alert sounds
app.mount("/sounds", StaticFiles(directory=SOUNDS_DIR, check_dir=False), name="sounds")


@app.get("/")
async def root():
    return {
        "message": "Kitchen Display System API",
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
