import os
from dispatch_hub.config.config import settings

# Set the timezone for the application process
os.environ["TZ"] = settings.TZ

from contextlib import asynccontextmanager

import logfire
import sentry_sdk
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.database.database import async_session, engine, get_db
from dispatch_hub.routes import (
    auth_routes,
    inventory_routes,
    logistics_routes,
    manifest_routes,
    order_routes,
    return_routes,
    settlement_routes,
)
from dispatch_hub.utils.cron_job import poll_tracking, retry_failed_bookings
from dispatch_hub.utils.exceptions import DispatchError
from dispatch_hub.utils.limiter import limiter
from dispatch_hub.utils.logger_config import configure_production_logging, setup_logger

if settings.ENVIRONMENT == "production":
    configure_production_logging()

logger = setup_logger()

scheduler = AsyncIOScheduler()


async def logged_retry_failed_bookings():
    logger.info("Starting courier booking retry job...")
    try:
        await retry_failed_bookings()
    except Exception as e:
        logger.error(f"Error in retry_failed_bookings: {str(e)}")


async def logged_poll_tracking():
    logger.info("Starting courier tracking poll job...")
    try:
        await poll_tracking()
    except Exception as e:
        logger.error(f"Error in poll_tracking: {str(e)}")


@asynccontextmanager
async def lifespan(application: FastAPI):
    logger.info("Initializing application...")

    async with async_session() as db:
        await db.execute(text("SELECT 1"))
    logger.info("Database connection successful")

    if settings.SCHEDULER_ENABLED:
        scheduler.add_job(
            logged_retry_failed_bookings,
            trigger=IntervalTrigger(minutes=settings.BOOKING_RETRY_INTERVAL_MINUTES),
            id="retry_failed_bookings",
            replace_existing=True,
        )
        scheduler.add_job(
            logged_poll_tracking,
            trigger=IntervalTrigger(minutes=settings.TRACKING_POLL_INTERVAL_MINUTES),
            id="poll_tracking",
            replace_existing=True,
        )
        scheduler.start()
        logger.info(f"Scheduled jobs: {scheduler.get_jobs()}")

    yield

    if scheduler.running:
        logger.info("Shutting down scheduler...")
        scheduler.shutdown()
    await engine.dispose()
    logger.info("Cleanup complete")


if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=1.0,
    )


app = FastAPI(
    title=settings.APP_NAME,
    lifespan=lifespan,
    debug=settings.DEBUG,
    summary="Order fulfillment, courier sync and COD settlement.",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, **({"context": exc.detail} if exc.detail else {})},
    )


logfire.configure(service_name=settings.APP_NAME, send_to_logfire="if-token-present", token=settings.LOGFIRE_TOKEN)
logfire.instrument_fastapi(app=app)
logfire.instrument_sqlalchemy(engine=engine)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "HEAD", "PUT", "PATCH", "OPTIONS", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/")
def read_root():
    return {"message": f"Welcome to {settings.APP_NAME} API"}


@app.get("/api/db", tags=["Health Status"])
async def check_db_health(db: AsyncSession = Depends(get_db)):
    """Check database connectivity"""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "database": "disconnected", "error": str(e)}


@app.get("/api/health", tags=["Health Status"])
def api_health_check() -> dict:
    """Check the status of the API"""
    return {"status": "OK", "message": "API up and running"}


app.include_router(auth_routes.router)
app.include_router(inventory_routes.router)
app.include_router(order_routes.router)
app.include_router(manifest_routes.router)
app.include_router(return_routes.router)
app.include_router(settlement_routes.rider_router)
app.include_router(settlement_routes.router)
app.include_router(logistics_routes.router)
