import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from api.v1 import analytics, auth, transactions, users
from core.config import settings
from core.errors import AuthError
from db.mongodb import close_mongo_client, get_mongo_db, init_mongo_indexes
from services.otp_service import run_otp_sweeper
from utils.logging_config import configure_logging, RequestContextMiddleware
from utils.responses import NO_STORE_HEADERS

# Configure logging with date-based files and TTL retention
logger = configure_logging("finance_tracker")

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG
)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    logger.info(f"{exc.kind} at {request.url.path}: {exc.message}")
    headers = {**NO_STORE_HEADERS, **(exc.headers or {})}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# Global exception handler to ensure 500s for unexpected errors
@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error at {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Add GZip compression for larger JSON payloads
app.add_middleware(GZipMiddleware, minimum_size=500)

# Request id, account id and API path on every log line
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(transactions.router, prefix="/api/transactions", tags=["Transactions"])
app.include_router(analytics.router, prefix="/api/analytics", tags=["Analytics"])


@app.on_event("startup")
async def startup_db_client():
    """Ensure indexes and start the OTP sweeper"""
    try:
        await init_mongo_indexes()
        logger.info("Mongo indexes ensured")
    except Exception as e:
        logger.warning(f"Mongo init skipped or failed: {e}")
    app.state.otp_sweeper = asyncio.create_task(run_otp_sweeper())
    logger.info("Application startup complete")


@app.on_event("shutdown")
async def shutdown_db_client():
    sweeper = getattr(app.state, "otp_sweeper", None)
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    close_mongo_client()
    logger.info("Application shutdown complete")


@app.get("/")
async def root():
    return {"message": "Finance Tracker API", "version": settings.VERSION}


@app.get("/health")
async def health_check():
    db = get_mongo_db()
    if db is None:
        return {"status": "degraded", "database": "mongo_not_configured"}
    try:
        await db.command({"ping": 1})
        return {"status": "healthy", "database": "mongo_connected"}
    except Exception as e:
        logger.warning(f"Health Mongo check failed: {e}")
        return {"status": "degraded", "database": "mongo_unavailable"}
