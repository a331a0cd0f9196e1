from datetime import datetime
from typing import Any, Dict

from pydantic import ValidationError

from core.database import Database
from core.exceptions import ConfigurationError
from core.logger import setup_logger
from modules.class_settings.model import ProgressionConfig

logger = setup_logger("class_settings")


class ClassSettingService:

    @staticmethod
    async def get_overrides(class_id: str, session=None) -> Dict[str, Any]:
        cursor = Database.class_settings().find({"class_id": class_id}, session=session)
        return {doc["key"]: doc["value"] async for doc in cursor}

    @staticmethod
    async def get_config(class_id: str, session=None) -> ProgressionConfig:
        """Defaults with the class overrides layered on top."""
        overrides = await ClassSettingService.get_overrides(class_id, session=session)
        if not overrides:
            # return default settings object
            return ProgressionConfig()

        known = {k: v for k, v in overrides.items() if k in ProgressionConfig.model_fields}
        for key in overrides.keys() - known.keys():
            logger.warning(f"Ignoring unknown setting '{key}' for class {class_id}")

        try:
            return ProgressionConfig(**known)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings for class {class_id}: {e}") from e

    @staticmethod
    async def set_value(class_id: str, key: str, value: Any) -> ProgressionConfig:
        """Validate and store a single override, returning the resulting config."""
        if key not in ProgressionConfig.model_fields:
            raise ConfigurationError(f"Unknown setting: {key}")

        current = await ClassSettingService.get_overrides(class_id)
        current[key] = value
        try:
            config = ProgressionConfig(**current)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid value for {key}: {value!r}") from e

        # Store the coerced value so reads never re-parse strings
        coerced = getattr(config, key)
        await Database.class_settings().update_one(
            {"class_id": class_id, "key": key},
            {
                "$set": {"value": coerced, "updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow()},
            },
            upsert=True
        )
        logger.info(f"Class {class_id}: {key} = {coerced!r}")
        return config

    @staticmethod
    async def reset(class_id: str, key: str) -> bool:
        """Drop an override so the default applies again."""
        result = await Database.class_settings().delete_one({"class_id": class_id, "key": key})
        return result.deleted_count > 0
