from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import Optional
from bson import ObjectId

class MongoModel(BaseModel):
    """Base model for MongoDB documents."""
    id: Optional[ObjectId] = Field(default_factory=ObjectId, alias="_id")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
        use_enum_values=True,
    )

    def to_mongo(self, **kwargs):
        """Convert to dictionary compatible with MongoDB."""
        exclude_unset = kwargs.pop('exclude_unset', False)
        by_alias = kwargs.pop('by_alias', True)

        parsed = self.model_dump(
            exclude_unset=exclude_unset,
            by_alias=by_alias,
            **kwargs
        )

        # If _id is None, remove it so Mongo generates one
        if '_id' in parsed and parsed['_id'] is None:
            del parsed['_id']

        return parsed

    @classmethod
    def from_mongo(cls, doc: Optional[dict]):
        """Build a model from a raw document, None when the lookup missed."""
        if doc is None:
            return None
        return cls(**doc)
