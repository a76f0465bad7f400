import logging

from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from journey_engine.config import DB_NAME, MONGO_TRANSACTIONS, MONGO_URI
from journey_engine.db.documents import DOCUMENT_MODELS
from journey_engine.db.mongo import MongoJourneyStore

logger = logging.getLogger(__name__)


async def init_db(uri: str = MONGO_URI, db_name: str = DB_NAME) -> AsyncIOMotorClient:
    try:
        logger.info("Initializing database connection...")
        client = AsyncIOMotorClient(uri, tz_aware=True)

        # Test the connection
        await client.admin.command("ping")
        logger.info("MongoDB connection test successful.")

        await init_beanie(database=client[db_name], document_models=DOCUMENT_MODELS)
        logger.info("MongoDB connection established and Beanie initialized.")
        return client
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise


async def init_store(
    uri: str = MONGO_URI, db_name: str = DB_NAME, use_transactions: bool = MONGO_TRANSACTIONS
) -> MongoJourneyStore:
    client = await init_db(uri, db_name)
    if not use_transactions:
        logger.warning("MongoDB transactions disabled; composite writes are not atomic")
    return MongoJourneyStore(client, use_transactions=use_transactions)
