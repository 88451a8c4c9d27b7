import os
import logging
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from motor.motor_asyncio import AsyncIOMotorClient
import redis.asyncio as redis
from dotenv import load_dotenv

from hivegate.services.otp_store import MongoOtpStore, MemoryOtpStore
from hivegate.services.pending_registration import RedisPendingRegistrations, MemoryPendingRegistrations

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Relational store for users and audit logs (postgresql+asyncpg://... in production)
DATABASE_URL = os.getenv("DATABASE_URL")
if DATABASE_URL:
    engine = create_async_engine(DATABASE_URL, echo=os.getenv("SQL_ECHO", "0") == "1")
    AsyncSessionLocal = async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False
    )
else:
    engine = None
    AsyncSessionLocal = None

# MongoDB holds OTP challenges
MONGODB_URI = os.getenv("MONGODB_URI")
if MONGODB_URI:
    mongo_client = AsyncIOMotorClient(MONGODB_URI, tz_aware=True)
    mongo_db = mongo_client[os.getenv("MONGODB_DB", "hivegate")]
else:
    mongo_client = None
    mongo_db = None

# Redis holds registrations staged until the OTP is confirmed
REDIS_URI = os.getenv("REDIS_URI")
if REDIS_URI:
    redis_client = redis.from_url(REDIS_URI)
else:
    redis_client = None

# In-process fallbacks when Mongo / Redis are not configured
memory_otp_store = MemoryOtpStore()
memory_pending_registrations = MemoryPendingRegistrations()


# Database dependency
async def get_db():
    if AsyncSessionLocal is not None:
        async with AsyncSessionLocal() as session:
            yield session
    else:
        yield None


def get_otp_store():
    # Motor Database objects do not implement truthiness; compare with None explicitly
    if mongo_db is not None:
        return MongoOtpStore(mongo_db.otp_challenges)
    return memory_otp_store


def get_pending_registrations():
    if redis_client is not None:
        return RedisPendingRegistrations(redis_client)
    return memory_pending_registrations


async def create_tables():
    from hivegate.models.user import Base
    from hivegate.models.audit_log import AuditLog  # noqa: F401
    if engine is None:
        return
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# Mongo index setup (TTL + lookup)
async def ensure_mongo_indexes():
    if mongo_db is None:
        return
    await get_otp_store().ensure_indexes()
