import asyncio
import weakref
from bisect import bisect_right
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from core.config import settings
from core.database import Database
from core.exceptions import ConcurrencyConflict, ConfigurationError, NotFound
from core.logger import setup_logger
from core.models.character import Character
from core.unit_of_work import UnitOfWork
from modules.xp.models import ExperienceChange, ExperienceEvent, LevelThreshold

logger = setup_logger("xp_service")

LEVEL_TITLES = {
    1: "Apprentice",
    5: "Dedicated Student",
    10: "Novice Scholar",
    15: "Researcher",
    20: "Young Sage",
    25: "Erudite",
    30: "Master of Knowledge",
    35: "Academic Legend",
    40: "Grand Sage",
    45: "Supreme Master",
    50: "Eternal Legend",
}


class LevelTable:
    """
    Immutable level -> cumulative experience lookup.
    Loaded once and handed to whoever needs it; never mutated afterwards.
    """

    def __init__(self, thresholds: Iterable[LevelThreshold]):
        rows = [(t.level, t.experience_required) for t in thresholds]
        if not rows:
            raise ConfigurationError("Level table is empty. Run seed_db.py first.")

        for (prev_level, prev_xp), (level, xp) in zip(rows, rows[1:]):
            if level <= prev_level:
                raise ConfigurationError(f"Level table is not sorted by level near level {level}")
            if xp <= prev_xp:
                raise ConfigurationError(
                    f"Experience thresholds must strictly increase (level {level}: {xp} <= {prev_xp})"
                )

        self._levels: Tuple[int, ...] = tuple(level for level, _ in rows)
        self._required: Tuple[int, ...] = tuple(xp for _, xp in rows)

    @staticmethod
    def default_thresholds(max_level: int = 50) -> List[LevelThreshold]:
        """Smooth exponential curve: 100 * level^1.5."""
        return [
            LevelThreshold(
                level=level,
                experience_required=int(100 * level ** 1.5),
                title=LEVEL_TITLES.get(level, ""),
            )
            for level in range(1, max_level + 1)
        ]

    @property
    def min_level(self) -> int:
        return self._levels[0]

    @property
    def max_level(self) -> int:
        return self._levels[-1]

    def level_for(self, total_experience: int) -> int:
        """Highest level whose threshold is <= total_experience."""
        idx = bisect_right(self._required, total_experience) - 1
        if idx < 0:
            return self.min_level
        return self._levels[idx]

    def required_for(self, level: int) -> Optional[int]:
        """Cumulative experience needed to reach `level`."""
        idx = bisect_right(self._levels, level) - 1
        if idx < 0 or self._levels[idx] != level:
            return None
        return self._required[idx]

    def threshold_for(self, level: int) -> Optional[int]:
        """Experience needed to advance past `level`. None at max level."""
        idx = bisect_right(self._levels, level)
        if idx >= len(self._levels):
            return None
        return self._required[idx]

    def experience_to_next_level(self, total_experience: int) -> Optional[int]:
        nxt = self.threshold_for(self.level_for(total_experience))
        if nxt is None:
            return None
        return max(0, nxt - total_experience)

    def progress_in_level(self, total_experience: int) -> float:
        """Percentage (0-100) of the way from the current level to the next."""
        level = self.level_for(total_experience)
        nxt = self.threshold_for(level)
        if nxt is None:
            return 100.0

        base = self.required_for(level) or 0
        span = nxt - base
        if span <= 0:
            return 100.0
        progress = (total_experience - base) / span * 100
        return round(max(0.0, min(100.0, progress)), 2)


class LevelTableService:
    @staticmethod
    async def load() -> LevelTable:
        """Read the seeded thresholds. Fatal if the table was never seeded."""
        cursor = Database.level_thresholds().find({}).sort("level", 1)
        thresholds = [LevelThreshold(**doc) async for doc in cursor]
        table = LevelTable(thresholds)
        logger.info(f"Loaded level table ({table.min_level}-{table.max_level})")
        return table

    @staticmethod
    async def seed(thresholds: List[LevelThreshold]) -> int:
        """Insert missing levels. Existing rows are left untouched."""
        created = 0
        for threshold in thresholds:
            result = await Database.level_thresholds().update_one(
                {"level": threshold.level},
                {"$setOnInsert": threshold.to_mongo()},
                upsert=True
            )
            if result.upserted_id is not None:
                created += 1
        return created


class CharacterService:
    @staticmethod
    async def create(student_id: str, class_id: str, archetype: str = "warrior", name: str = "",
                     level_table: LevelTable = None) -> Character:
        """Create the character a student gets when joining a class. Idempotent."""
        character = Character(
            student_id=student_id,
            class_id=class_id,
            archetype=archetype,
            name=name,
            level=level_table.level_for(0) if level_table else 1,
        )
        try:
            await Database.characters().insert_one(character.to_mongo())
        except DuplicateKeyError:
            return await CharacterService.get(student_id, class_id)
        logger.info(f"Created {archetype} character for student {student_id} in class {class_id}")
        return character

    @staticmethod
    async def find(student_id: str, class_id: str, session=None) -> Optional[Character]:
        doc = await Database.characters().find_one(
            {"student_id": student_id, "class_id": class_id}, session=session
        )
        return Character.from_mongo(doc)

    @staticmethod
    async def get(student_id: str, class_id: str, session=None) -> Character:
        character = await CharacterService.find(student_id, class_id, session=session)
        if character is None:
            raise NotFound("character", (student_id, class_id))
        return character

    @staticmethod
    async def list_for_class(class_id: str, session=None) -> List[Character]:
        cursor = Database.characters().find({"class_id": class_id, "archived": False}, session=session)
        return [Character(**doc) async for doc in cursor]

    @staticmethod
    async def archive_class(class_id: str) -> int:
        """Soft-archive every character of a class. Characters are never deleted."""
        result = await Database.characters().update_many(
            {"class_id": class_id, "archived": False},
            {"$set": {"archived": True, "updated_at": datetime.utcnow()}}
        )
        return result.modified_count

    @staticmethod
    async def get_leaderboard(class_id: str, limit: int = 10) -> List[Character]:
        """Get top characters of a class by Level/XP."""
        cursor = Database.characters().find({"class_id": class_id, "archived": False}) \
            .sort([("level", -1), ("total_experience", -1)]).limit(limit)
        characters = []
        async for doc in cursor:
            characters.append(Character(**doc))
        return characters


class ExperienceLedger:
    """The only writer of Character.level and Character.total_experience."""

    def __init__(self, level_table: LevelTable, retry_limit: int = None):
        self.level_table = level_table
        self.retry_limit = retry_limit or settings.experience_retry_limit
        # Per-character lock so applies in this process queue up instead of spinning.
        # An entry lives only while some apply holds or waits on its lock.
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()

    def _get_lock(self, key: Tuple[str, str]) -> asyncio.Lock:
        """Return a per-character lock, creating it if needed"""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def apply(self, character: Character, delta: int, reason: str, source: str = "activity",
                    uow: UnitOfWork = None, idempotency_key: str = None) -> Optional[ExperienceChange]:
        """
        Add `delta` experience (negative allowed, total clamped at 0) and recompute the level.

        The write is a compare-and-swap on total_experience, so concurrent applies from
        other processes are retried rather than overwritten.

        With an `idempotency_key` the key is recorded on the character in the same
        update, so a grant is applied at most once however often it is retried.
        Returns None when the key was already applied.
        """
        uow = uow or UnitOfWork()
        owner = (character.student_id, character.class_id)
        lock = self._get_lock(owner)

        async with lock:
            for attempt in range(1, self.retry_limit + 1):
                doc = await Database.characters().find_one(
                    {"student_id": character.student_id, "class_id": character.class_id},
                    session=uow.session
                )
                if doc is None:
                    raise NotFound("character", owner)

                if idempotency_key and idempotency_key in doc.get("ledger_keys", []):
                    logger.info(f"Grant {idempotency_key} already applied to {owner}")
                    await self._ensure_event(doc, delta, reason, source, idempotency_key, uow)
                    self._sync(character, doc["total_experience"], doc["level"])
                    return None

                previous_experience = doc["total_experience"]
                previous_level = doc["level"]
                new_experience = max(0, previous_experience + delta)
                new_level = self.level_table.level_for(new_experience)

                query = {"_id": doc["_id"], "total_experience": previous_experience}
                update = {"$set": {
                    "total_experience": new_experience,
                    "level": new_level,
                    "updated_at": datetime.utcnow(),
                }}
                if idempotency_key:
                    query["ledger_keys"] = {"$ne": idempotency_key}
                    update["$push"] = {"ledger_keys": idempotency_key}

                result = await Database.characters().update_one(query, update, session=uow.session)
                if result.matched_count == 1:
                    break
                logger.info(f"Experience write raced for {owner}, retry {attempt}/{self.retry_limit}")
            else:
                raise ConcurrencyConflict(f"Could not apply {delta} XP to {owner} after {self.retry_limit} attempts")

            event = ExperienceEvent(
                student_id=character.student_id,
                class_id=character.class_id,
                requested=delta,
                applied=new_experience - previous_experience,
                source=source,
                reason=reason,
                level_before=previous_level,
                level_after=new_level,
            )
            event.idempotency_key = idempotency_key or str(event.id)
            await Database.experience_events().insert_one(event.to_mongo(), session=uow.session)

        change = ExperienceChange(
            student_id=character.student_id,
            class_id=character.class_id,
            previous_level=previous_level,
            new_level=new_level,
            previous_experience=previous_experience,
            new_experience=new_experience,
        )
        uow.experience_changes.append(change)
        self._sync(character, new_experience, new_level)

        if change.leveled_up:
            logger.info(f"Student {character.student_id} leveled up to {new_level} in class {character.class_id}!")
        return change

    @staticmethod
    def _sync(character: Character, total_experience: int, level: int):
        # Keep the caller's copy in sync
        character.total_experience = total_experience
        character.level = level

    @staticmethod
    async def _ensure_event(doc: dict, delta: int, reason: str, source: str, idempotency_key: str,
                            uow: UnitOfWork):
        """
        Write the event row of a keyed grant whose character update landed but whose
        event insert did not. Keyed grants are rewards, so nothing was clamped.
        """
        query = {"student_id": doc["student_id"], "class_id": doc["class_id"], "idempotency_key": idempotency_key}
        if await Database.experience_events().find_one(query, session=uow.session) is not None:
            return

        event = ExperienceEvent(
            student_id=doc["student_id"],
            class_id=doc["class_id"],
            requested=delta,
            applied=delta,
            source=source,
            reason=f"{reason} (recovered)",
            level_before=doc["level"],
            level_after=doc["level"],
            idempotency_key=idempotency_key,
        )
        try:
            await Database.experience_events().insert_one(event.to_mongo(), session=uow.session)
        except DuplicateKeyError:
            return
        logger.warning(f"Recovered missing experience event {idempotency_key} for {doc['student_id']}")

    @staticmethod
    async def history(student_id: str, class_id: str, limit: int = 50) -> List[ExperienceEvent]:
        cursor = Database.experience_events().find({"student_id": student_id, "class_id": class_id}) \
            .sort("created_at", -1).limit(limit)
        return [ExperienceEvent(**doc) async for doc in cursor]

    @staticmethod
    async def gained_since(student_id: str, class_id: str, since: datetime) -> int:
        """Exact experience gained since `since`, from the event log."""
        pipeline = [
            {"$match": {"student_id": student_id, "class_id": class_id, "created_at": {"$gte": since}}},
            {"$group": {"_id": None, "total": {"$sum": "$applied"}}},
        ]
        async for doc in Database.experience_events().aggregate(pipeline):
            return doc["total"]
        return 0

    def stats(self, character: Character) -> dict:
        to_next = self.level_table.experience_to_next_level(character.total_experience)
        return {
            "level": character.level,
            "total_experience": character.total_experience,
            "experience_to_next_level": to_next,
            "progress_percent": self.level_table.progress_in_level(character.total_experience),
            "is_max_level": to_next is None,
        }
