"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ipnledger.core.config import settings
from ipnledger.core.logging import setup_logging
from ipnledger.db.session import init_db
from ipnledger.db.redis import get_redis_client
from ipnledger.api import ipn

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    worker = None
    if settings.START_WORKER:
        from ipnledger.tasks.ipn_worker import ipn_worker_task
        worker = asyncio.create_task(ipn_worker_task())
        logger.info("IPN worker started")

    yield

    if worker is not None:
        worker.cancel()
        logger.info("IPN worker stopped")


app = FastAPI(title="IPN Ledger", version="1.0.0", lifespan=lifespan)

app.include_router(ipn.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
