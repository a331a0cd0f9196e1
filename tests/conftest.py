import os
import tempfile

# Must be set before core.config builds the settings
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="classquest-logs-"))

import pytest
from mongomock_motor import AsyncMongoMockClient

from core.database import Database
from factories import CLASS_ID, THRESHOLDS
from modules.xp.services import CharacterService, ExperienceLedger, LevelTable, LevelTableService


@pytest.fixture(autouse=True)
async def db():
    await Database.connect(client=AsyncMongoMockClient())
    yield Database.get_db()
    Database._client = None
    Database._db = None


@pytest.fixture
async def level_table(db) -> LevelTable:
    await LevelTableService.seed(THRESHOLDS)
    return await LevelTableService.load()


@pytest.fixture
def ledger(level_table) -> ExperienceLedger:
    return ExperienceLedger(level_table)


@pytest.fixture
def make_character(db):
    async def _make(student_id: str = "alice", class_id: str = CLASS_ID, total_experience: int = 0,
                    level: int = 1):
        character = await CharacterService.create(student_id, class_id)
        if total_experience or level != 1:
            await Database.characters().update_one(
                {"student_id": student_id, "class_id": class_id},
                {"$set": {"total_experience": total_experience, "level": level}}
            )
            character = await CharacterService.get(student_id, class_id)
        return character
    return _make
