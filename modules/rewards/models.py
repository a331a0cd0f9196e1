from pydantic import BaseModel, Field


class RewardBreakdown(BaseModel):
    experience: int = Field(..., ge=0)
    currency: int = Field(..., ge=0)
    percentage: float = Field(..., ge=0, le=100, description="Score as a percentage of the max score")
    bonus_applied: bool = False
    multiplier: float = 1.0
