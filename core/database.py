from contextlib import asynccontextmanager

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from core.config import settings
from core.logger import setup_logger

logger = setup_logger("database")

class Database:
    _client: AsyncIOMotorClient = None
    _db = None

    @classmethod
    async def connect(cls, client: AsyncIOMotorClient = None):
        """Establish connection to MongoDB and make sure the unique indexes exist."""
        try:
            if client is None:
                client = AsyncIOMotorClient(settings.mongo_uri)
                # Verify connection
                await client.admin.command('ping')
            cls._client = client
            cls._db = cls._client[settings.db_name]
            await cls.ensure_indexes()
            logger.info("Connected to MongoDB")
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise e

    @classmethod
    async def close(cls):
        """Close connection to MongoDB."""
        if cls._client:
            cls._client.close()
            logger.info("Closed MongoDB connection")
        cls._client = None
        cls._db = None

    @classmethod
    def get_db(cls):
        """Get the database instance."""
        if cls._db is None:
            raise ConnectionError("Database not initialized. Call connect() first.")
        return cls._db

    @classmethod
    async def ensure_indexes(cls):
        """
        Unique keys backing the exactly-once guarantees.
        A losing writer gets a DuplicateKeyError instead of a second row.
        """
        await cls.characters().create_index(
            [("student_id", ASCENDING), ("class_id", ASCENDING)], unique=True
        )
        await cls.wallets().create_index(
            [("student_id", ASCENDING), ("class_id", ASCENDING)], unique=True
        )
        await cls.badge_awards().create_index(
            [("student_id", ASCENDING), ("badge_id", ASCENDING), ("class_id", ASCENDING)], unique=True
        )
        await cls.mission_progress().create_index(
            [("mission_id", ASCENDING), ("student_id", ASCENDING)], unique=True
        )
        await cls.submissions().create_index(
            [("activity_id", ASCENDING), ("student_id", ASCENDING)], unique=True
        )
        await cls.level_thresholds().create_index("level", unique=True)
        await cls.class_settings().create_index(
            [("class_id", ASCENDING), ("key", ASCENDING)], unique=True
        )
        await cls.badges().create_index("badge_id", unique=True)
        await cls.missions().create_index("mission_id", unique=True)
        await cls.activities().create_index("activity_id", unique=True)
        await cls.shop_items().create_index("item_id", unique=True)
        await cls.behavior_types().create_index("behavior_type_id", unique=True)

        # Every ledger row carries a key: the grant key for keyed rewards, its own id otherwise
        await cls.transactions().create_index(
            [("student_id", ASCENDING), ("class_id", ASCENDING), ("idempotency_key", ASCENDING)], unique=True
        )
        await cls.experience_events().create_index(
            [("student_id", ASCENDING), ("class_id", ASCENDING), ("idempotency_key", ASCENDING)], unique=True
        )

        await cls.transactions().create_index(
            [("student_id", ASCENDING), ("class_id", ASCENDING), ("created_at", DESCENDING)]
        )
        await cls.experience_events().create_index(
            [("student_id", ASCENDING), ("class_id", ASCENDING), ("created_at", DESCENDING)]
        )

    @classmethod
    @asynccontextmanager
    async def transaction(cls):
        """
        Unit-of-work boundary for one external event.

        Yields a session inside a multi-document transaction when
        USE_TRANSACTIONS is enabled (replica set required), otherwise None.
        Every write made during the event must be passed the yielded session.
        """
        if not settings.use_transactions:
            yield None
            return

        async with await cls._client.start_session() as session:
            async with session.start_transaction():
                yield session

    # Helper methods for collections
    @classmethod
    def characters(cls):
        return cls.get_db().characters

    @classmethod
    def level_thresholds(cls):
        return cls.get_db().level_thresholds

    @classmethod
    def experience_events(cls):
        return cls.get_db().experience_events

    @classmethod
    def transactions(cls):
        return cls.get_db().transactions

    @classmethod
    def wallets(cls):
        return cls.get_db().wallets

    @classmethod
    def badges(cls):
        return cls.get_db().badges

    @classmethod
    def badge_awards(cls):
        return cls.get_db().badge_awards

    @classmethod
    def missions(cls):
        return cls.get_db().missions

    @classmethod
    def mission_progress(cls):
        return cls.get_db().mission_progress

    @classmethod
    def activities(cls):
        return cls.get_db().activities

    @classmethod
    def submissions(cls):
        return cls.get_db().submissions

    @classmethod
    def attendance(cls):
        return cls.get_db().attendance

    @classmethod
    def behavior_types(cls):
        return cls.get_db().behavior_types

    @classmethod
    def behavior_records(cls):
        return cls.get_db().behavior_records

    @classmethod
    def shop_items(cls):
        return cls.get_db().shop_items

    @classmethod
    def notifications(cls):
        return cls.get_db().notifications

    @classmethod
    def class_settings(cls):
        return cls.get_db().class_settings
