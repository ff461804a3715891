from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from carewatch.core.config import settings
from carewatch.modules.alerts.documents import DOCUMENT_MODELS

MONGO_CLIENT: AsyncIOMotorClient | None = None


async def init_db() -> AsyncIOMotorClient:
    """
    Create a single Motor client, initialize Beanie, and return the client.

    Called once at startup, and only when MONGODB_URL is configured.
    """
    global MONGO_CLIENT

    client = AsyncIOMotorClient(
        settings.MONGODB_URL,
        uuidRepresentation="standard",
        serverSelectionTimeoutMS=5000,
        tz_aware=True,
    )

    db: AsyncIOMotorDatabase = client[settings.MONGODB_DB_NAME]

    await init_beanie(database=db, document_models=DOCUMENT_MODELS)

    MONGO_CLIENT = client
    return client
