"""VERI*FACTU compliance API - Main FastAPI application."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from verifactu_api.middleware.correlation import CorrelationIDMiddleware
from verifactu_api.routes import verifactu
from verifactu_api.settings import get_settings

# Configure logging
logging.basicConfig(
    level=get_settings().log_level,
    format='{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s", "module": "%(name)s"}',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting VERI*FACTU API...")
    try:
        settings.validate_production_settings()

        from verifactu_api.security.encryption import get_encryption_service

        get_encryption_service()
        logger.info("Encryption service initialized")
    except ValueError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise ValueError(f"Invalid configuration: {e}") from e

    yield
    logger.info("Shutting down VERI*FACTU API...")


app = FastAPI(
    title="VERI*FACTU Compliance API",
    description="Hash-chained invoice registry and tax authority transmission",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)
app.add_middleware(CorrelationIDMiddleware)

# Prometheus metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

app.include_router(verifactu.router)


@app.get("/health")
async def health_check():
    """Health check endpoint (basic liveness)."""
    return {
        "status": "healthy",
        "service": "verifactu-api",
        "version": "0.1.0",
    }


@app.get("/ready")
async def readiness_check():
    """Readiness check endpoint (database, migrations and Celery broker)."""
    import redis

    from verifactu_api.db.migrations import current_revision, head_revision
    from verifactu_api.db.session import SessionLocal

    checks = {"database": False, "migrations": False, "broker": False}

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = True
    except SQLAlchemyError as e:
        logger.error(f"Database check failed: {e}")
    finally:
        db.close()

    if checks["database"]:
        db = SessionLocal()
        try:
            current, head = current_revision(db.connection()), head_revision()
        except SQLAlchemyError as e:
            logger.error(f"Migration check failed: {e}")
        else:
            if current != head:
                logger.warning(f"Migrations not at head: current={current}, head={head} (run `verifactu init-db`)")
            checks["migrations"] = current == head
        finally:
            db.close()

    # Submission ticks are scheduled through the broker
    try:
        redis.from_url(settings.redis_url, socket_connect_timeout=2).ping()
        checks["broker"] = True
    except redis.RedisError as e:
        logger.error(f"Broker check failed: {e}")

    ready = all(checks.values())
    return JSONResponse(
        content={"status": "ready" if ready else "not_ready", "checks": checks},
        status_code=200 if ready else 503,
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "VERI*FACTU Compliance API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
