from enum import Enum

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field
from core.models.base import MongoModel
from typing import Optional

class ItemKind(str, Enum):
    AVATAR = "avatar"
    PRIVILEGE = "privilege"
    VIRTUAL_ITEM = "virtual_item"
    CONSUMABLE = "consumable"

class ShopItem(MongoModel):
    item_id: str = Field(...)
    class_id: str = Field(...)
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="")

    # Pricing
    price: int = Field(..., gt=0, le=10000)
    kind: ItemKind = Field(default=ItemKind.VIRTUAL_ITEM)

    # Visuals
    image_url: Optional[str] = Field(default=None)

    # Stock
    available: bool = True
    limited: bool = False
    stock: int = Field(default=0, ge=0, description="Units left when limited")

class PurchaseRequest(BaseModel):
    item_id: str
    student_id: str
    class_id: str

class PurchaseResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    item: ShopItem
    transaction_id: ObjectId
    balance: int
