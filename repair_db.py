import asyncio
from datetime import datetime

from loguru import logger

from core.database import Database
from modules.economy.services import CurrencyLedger
from modules.xp.services import LevelTableService


async def repair_wallets() -> int:
    """Rebuild every materialized wallet from the transaction log."""
    pairs = await Database.transactions().aggregate([
        {"$group": {"_id": {"student_id": "$student_id", "class_id": "$class_id"}}}
    ]).to_list(length=None)

    for pair in pairs:
        await CurrencyLedger.rebuild_wallet(pair["_id"]["student_id"], pair["_id"]["class_id"])
    return len(pairs)


async def repair_levels() -> int:
    """Re-derive every character's level from its total experience."""
    table = await LevelTableService.load()
    fixed = 0
    async for doc in Database.characters().find({}):
        level = table.level_for(doc["total_experience"])
        if level == doc["level"]:
            continue

        result = await Database.characters().update_one(
            {"_id": doc["_id"], "total_experience": doc["total_experience"]},
            {"$set": {"level": level, "updated_at": datetime.utcnow()}}
        )
        if result.modified_count:
            logger.warning(f"Character {doc['student_id']} in {doc['class_id']}: level {doc['level']} -> {level}")
            fixed += 1
    return fixed


async def repair():
    logger.info("Repairing DB...")
    await Database.connect()

    wallets = await repair_wallets()
    logger.info(f"Rebuilt {wallets} wallets.")

    levels = await repair_levels()
    logger.info(f"Fixed {levels} character levels.")

    await Database.close()

if __name__ == "__main__":
    asyncio.run(repair())
