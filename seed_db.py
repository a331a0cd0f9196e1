import asyncio

from loguru import logger

from core.database import Database
from modules.badges.services import DEFAULT_BADGES
from modules.classroom.services import DEFAULT_BEHAVIOR_TYPES, BehaviorService
from modules.xp.services import LevelTable, LevelTableService


async def seed():
    logger.info("Connecting to DB...")
    await Database.connect()

    # 1. Level thresholds, the engine refuses to start without them
    created = await LevelTableService.seed(LevelTable.default_thresholds())
    logger.info(f"Seeded {created} level thresholds.")

    # 2. Global badge catalog, existing badges are never overwritten
    logger.info("Seeding Badges...")
    new_badges = 0
    for badge in DEFAULT_BADGES:
        result = await Database.badges().update_one(
            {"badge_id": badge.badge_id},
            {"$setOnInsert": badge.to_mongo()},
            upsert=True
        )
        if result.upserted_id is not None:
            new_badges += 1
    logger.info(f"Seeded {new_badges} badges.")

    # 3. Behavior types
    logger.info("Seeding Behavior Types...")
    for behavior_type in DEFAULT_BEHAVIOR_TYPES:
        await BehaviorService.create_type(behavior_type)

    logger.success("Seeding Complete!")
    await Database.close()

if __name__ == "__main__":
    asyncio.run(seed())
