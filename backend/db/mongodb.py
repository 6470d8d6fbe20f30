import logging
import asyncio
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
import certifi
from core.config import settings

logger = logging.getLogger(__name__)

_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None

def get_mongo_db() -> Optional[AsyncIOMotorDatabase]:
    global _mongo_client, _mongo_db
    if _mongo_db is not None:
        return _mongo_db
    if not settings.MONGO_URI:
        logger.warning("MONGO_URI is not set")
        return None
    client_kwargs = {
        "serverSelectionTimeoutMS": 30000,
        "connectTimeoutMS": 20000,
        "socketTimeoutMS": 20000,
    }
    # Atlas / SRV endpoints: pass the CA bundle explicitly to avoid local OpenSSL issues
    if "mongodb.net" in settings.MONGO_URI or settings.MONGO_URI.startswith("mongodb+srv://"):
        client_kwargs.update({
            "tls": True,
            "tlsCAFile": certifi.where(),
            "retryWrites": True,
        })
    _mongo_client = AsyncIOMotorClient(settings.MONGO_URI, **client_kwargs)
    _mongo_db = _mongo_client[settings.MONGO_DB]
    return _mongo_db

def require_mongo_db() -> AsyncIOMotorDatabase:
    """Like get_mongo_db but raise instead of returning None; callers surface it as a 500"""
    db = get_mongo_db()
    if db is None:
        raise RuntimeError("MongoDB is not configured")
    return db

def close_mongo_client() -> None:
    global _mongo_client, _mongo_db
    if _mongo_client is not None:
        _mongo_client.close()
    _mongo_client = None
    _mongo_db = None

async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    # Users
    await db.users.create_index("email", unique=True, name="u_email")
    # One-time passcodes: one record per (identifier, purpose), removed by Mongo once expired
    await db.otps.create_index([("identifier", ASCENDING), ("purpose", ASCENDING)], unique=True, name="u_identifier_purpose")
    await db.otps.create_index("expires_at", expireAfterSeconds=0, name="ttl_expires_at")
    # Transactions
    await db.transactions.create_index([("user_id", ASCENDING), ("date", DESCENDING)], name="i_user_date")
    await db.transactions.create_index([("user_id", ASCENDING), ("type", ASCENDING)], name="i_user_type")
    await db.transactions.create_index([("user_id", ASCENDING), ("category", ASCENDING)], name="i_user_category")
    await db.transactions.create_index([("user_id", ASCENDING), ("year", ASCENDING), ("month", ASCENDING)], name="i_user_year_month")

async def init_mongo_indexes():
    db = get_mongo_db()
    if db is None:
        return
    # Retry ping and index creation to allow primary election / networking delays
    for attempt in range(1, 6):
        try:
            await db.command({"ping": 1})
            await ensure_indexes(db)
            return
        except Exception as e:
            wait_s = min(2 ** attempt, 15)
            logger.warning(f"Mongo not ready (attempt {attempt}): {e}; retrying in {wait_s}s")
            await asyncio.sleep(wait_s)
    logger.error("Mongo index initialization failed after retries")
