"""
PostSecret AI Server - FastAPI application entry point.

Usage:
    uvicorn postsecret_ai.server.app:app --host 127.0.0.1 --port 8000

Or via CLI:
    psai serve --port 8000
"""

import logging

from fastapi import FastAPI

from .. import __version__
from .deps import close_services
from .routers import jobs, secrets
from ..utils.config import get_config

# ── Logging ──────────────────────────────────────────────────
logging.basicConfig(
    level=str(get_config().get("logging.level", "INFO")).upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ── App ──────────────────────────────────────────────────────

app = FastAPI(
    title="PostSecret AI Server",
    description="Secret classification, similarity search and bulk jobs",
    version=__version__,
)

app.include_router(jobs.router)
app.include_router(secrets.router)


# ── Lifecycle ────────────────────────────────────────────────

@app.on_event("startup")
async def startup():
    logger.info("PostSecret AI server starting up...")


@app.on_event("shutdown")
async def shutdown():
    close_services()
    logger.info("PostSecret AI server shut down")


@app.get("/health")
def health():
    return {"status": "ok", "version": __version__}
