import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_FILE,
    LOG_LEVEL,
)
from backend.logging_config import setup_logging
from backend.routers import admin, auth, core, events, participants, scanner, scans
from database.db import create_tables

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging(LOG_LEVEL, LOG_FILE)
    create_tables()
    logger.info("scantrack API ready")
    yield


app = FastAPI(title="scantrack API", lifespan=lifespan)

# -----------------------------
# CORS (React dev server)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)

app.include_router(core.router)
app.include_router(auth.router)
app.include_router(events.router)
app.include_router(participants.router)
app.include_router(scans.router)
app.include_router(scanner.router)
app.include_router(admin.router)
