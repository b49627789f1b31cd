import logging
import os
import sys
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from backend/.env
backend_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(backend_dir, ".env"))

# Add repo root to path so `backend.*` imports work under `uvicorn main:app`
parent_dir = os.path.dirname(backend_dir)
if parent_dir not in sys.path:
    sys.path.insert(0, parent_dir)

# Import after dotenv is loaded
from backend.core.config import settings, validate_config
from backend.core.logging import configure_logging
from backend.core.middleware.request_id import RequestIdMiddleware
from backend.core.validation import validate_env
from backend.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from backend.api import admin, billing, health, me, overrides, plans, sites

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("limitter")
    logger.info("Starting Limitter backend...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("limitter").info("Stopping Limitter backend...")


app = FastAPI(title="Limitter - Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

# Error handlers
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS for the web dashboard and the browser extension
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["health"])
app.include_router(health.root_router, tags=["health"])
app.include_router(me.router, tags=["me"])
app.include_router(plans.router, tags=["plans"])
app.include_router(sites.router, tags=["sites"])
app.include_router(overrides.router, tags=["overrides"])
app.include_router(billing.router, tags=["billing"])
app.include_router(admin.router, tags=["admin"])


@app.get("/api/version")
def version():
    """Simple endpoint to verify the backend is reachable."""
    return {"service": "limitter", "version": "0.1.0"}
