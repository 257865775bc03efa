"""
Main FastAPI application for the TradeLens journal backend.
Serves the journal, analytics, payments and community APIs; optionally
drains the email queue in the background.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tradelens.app.api.cron import router as cron_router
from tradelens.app.api.routes import router
from tradelens.app.common.config import get_config
from tradelens.app.common.db import init_db
from tradelens.app.community.routes import router as community_router
from tradelens.app.dashboard.routes import router as dashboard_router
from tradelens.app.notifications.worker import EmailWorker
from tradelens.app.payments.routes import router as payments_router
from tradelens.app.payments.routes import webhook_router
from tradelens.app.subscriptions.routes import router as subscriptions_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting TradeLens API...")
    config = get_config()

    if config.supabase_url:
        init_db()
        logger.info("Database initialized")
    else:
        logger.warning("SUPABASE_URL not set, database calls will fail")

    worker = None
    worker_task = None
    if config.email_worker_enabled:
        worker = EmailWorker(config.email_worker_interval_sec)
        worker_task = asyncio.create_task(worker.start())

    logger.info(f"TradeLens API started. Email worker: {'on' if worker else 'off'}")

    yield

    logger.info("Shutting down TradeLens API...")
    if worker is not None:
        await worker.stop()
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
    logger.info("TradeLens API stopped")


app = FastAPI(
    title="TradeLens API",
    description="Trading journal: trades, analytics, subscriptions and community",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)
app.include_router(dashboard_router)
app.include_router(payments_router)
app.include_router(webhook_router)
app.include_router(subscriptions_router)
app.include_router(community_router)
app.include_router(cron_router)


@app.get("/")
async def root():
    return {
        "service": "tradelens-api",
        "status": "running",
    }
